"""Dependency injection for FastAPI endpoints"""

from datetime import datetime
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from community_lending.infrastructure.database.session import get_db, get_session_factory
from community_lending.services.audit import AuditTrail, BestEffortAuditWriter
from community_lending.services.eligibility import EligibilityService
from community_lending.services.loans import LoanService
from community_lending.utils.date_utils import utc_now


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_clock() -> Callable[[], datetime]:
    """Provide the time source used by services"""
    return utc_now


def get_audit_side_channel(session_factory: sessionmaker = Depends(get_session_factory)) -> BestEffortAuditWriter:
    """Provide the best-effort audit writer with its own sessions"""
    return BestEffortAuditWriter(session_factory)


def get_audit_trail(db: Session = Depends(get_db)) -> AuditTrail:
    return AuditTrail(db)


def get_loan_service(
    db: Session = Depends(get_db),
    side_channel: BestEffortAuditWriter = Depends(get_audit_side_channel),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> LoanService:
    """Provide a loan lifecycle service bound to the request session"""
    return LoanService(db, side_channel, clock=clock)


def get_eligibility_service(
    db: Session = Depends(get_db),
    side_channel: BestEffortAuditWriter = Depends(get_audit_side_channel),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> EligibilityService:
    """Provide the eligibility service bound to the request session"""
    return EligibilityService(db, side_channel, clock=clock)
