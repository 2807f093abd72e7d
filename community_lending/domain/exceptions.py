"""Domain-specific exceptions"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    code = "domain_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(DomainException):
    """Input is malformed or out of range"""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field is not None:
            details.setdefault("field", field)
        super().__init__(message, details)
        self.field = field


class NotFoundError(DomainException):
    """Referenced loan, member, group or schedule does not exist"""

    code = "not_found"


class AuthorizationError(DomainException):
    """Actor lacks the role required for the attempted operation"""

    code = "forbidden"


class ConflictError(DomainException):
    """Entity is not in the required state, or a business invariant would break"""

    code = "conflict"


class IneligibleError(DomainException):
    """Eligibility verdict is negative"""

    code = "ineligible"

    def __init__(self, reason: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"Member is not eligible for a loan: {reason}", {"reason": reason})
        self.reason = reason


class InternalError(DomainException):
    """Data store or unexpected failure; safe to retry"""

    code = "internal_error"
