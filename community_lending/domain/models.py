"""Domain models - pure Python dataclasses representing business entities"""

import dataclasses
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from community_lending.domain.exceptions import ValidationError


class StringEnum(str, Enum):
    """Enum with string values for JSON serialization"""


class LoanStatus(StringEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    REPAID = "repaid"
    DEFAULTED = "defaulted"


# A member may hold at most one loan per group in these states
ACTIVE_LOAN_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.DISBURSED})


class InstallmentStatus(StringEnum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    FORGIVEN = "forgiven"


SETTLED_INSTALLMENT_STATUSES = frozenset({InstallmentStatus.PAID, InstallmentStatus.FORGIVEN})


class ScheduleStatus(StringEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    SUSPENDED = "suspended"


class RejectionReason(StringEnum):
    INSUFFICIENT_CONTRIBUTION = "insufficient_contribution"
    INSUFFICIENT_PARTICIPATION = "insufficient_participation"
    POOR_REPAYMENT_HISTORY = "poor_repayment_history"
    EXCESSIVE_OUTSTANDING_LOANS = "excessive_outstanding_loans"
    INSUFFICIENT_GROUP_MEMBERSHIP = "insufficient_group_membership"
    RECENT_DEFAULT = "recent_default"
    ACCOUNT_NOT_VERIFIED = "account_not_verified"
    ACCOUNT_SUSPENDED = "account_suspended"
    ADMIN_OVERRIDE = "admin_override"


class AuditAction(StringEnum):
    ELIGIBILITY_ASSESSED = "eligibility_assessed"
    ELIGIBILITY_OVERRIDDEN = "eligibility_overridden"
    LOAN_APPLIED = "loan_applied"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    PAYMENT_RECORDED = "payment_recorded"
    PENALTY_APPLIED = "penalty_applied"
    PENALTY_FORGIVEN = "penalty_forgiven"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_COMPLETED = "loan_completed"


class AuditStatus(StringEnum):
    SUCCESS = "success"
    FAILED = "failed"


class ActorRole(StringEnum):
    USER = "user"
    ADMIN = "admin"
    GROUP_ADMIN = "group_admin"
    SYSTEM = "system"


class MembershipRole(StringEnum):
    MEMBER = "member"
    GROUP_ADMIN = "group_admin"


@dataclass(frozen=True)
class Member:
    """Member record owned by the external user store"""

    member_id: str
    is_verified: bool
    role: ActorRole = ActorRole.USER
    is_suspended: bool = False


@dataclass(frozen=True)
class GroupMembership:
    """A member's seat in a savings group"""

    member_id: str
    group_id: str
    role: MembershipRole = MembershipRole.MEMBER
    joined_at: Optional[datetime] = None


@dataclass(frozen=True)
class Contribution:
    """Single contribution to a group's savings pool"""

    member_id: str
    group_id: str
    amount: int
    contributed_at: datetime


@dataclass(frozen=True)
class PriorLoan:
    """Loan history item as seen by the scorer"""

    loan_id: str
    status: LoanStatus
    amount: int
    outstanding_amount: int = 0
    installments_total: int = 0
    installments_on_time: int = 0


@dataclass(frozen=True)
class MemberLedger:
    """Read-only snapshot of everything the scorer needs for one member/group"""

    member: Member
    group_id: str
    membership: Optional[GroupMembership]
    contributions: List[Contribution] = field(default_factory=list)
    loans: List[PriorLoan] = field(default_factory=list)

    @property
    def total_contributed(self) -> int:
        return sum(c.amount for c in self.contributions)

    @property
    def first_contribution_at(self) -> Optional[datetime]:
        if not self.contributions:
            return None
        return min(c.contributed_at for c in self.contributions)


@dataclass(frozen=True)
class ScoreComponents:
    """Four weighted sub-scores of an eligibility assessment"""

    contribution_score: float = 0.0
    participation_score: float = 0.0
    repayment_score: float = 0.0
    risk_score: float = 0.0

    def __post_init__(self):
        _check_range("contribution_score", self.contribution_score, 0, 40)
        _check_range("participation_score", self.participation_score, 0, 30)
        _check_range("repayment_score", self.repayment_score, -20, 20)
        _check_range("risk_score", self.risk_score, 0, 10)


@dataclass(frozen=True)
class EligibilityAssessment:
    """One scoring verdict for a member/group pair; never mutated"""

    assessment_id: str
    member_id: str
    group_id: str
    overall_score: float
    components: ScoreComponents
    is_eligible: bool
    rejection_reason: Optional[RejectionReason]
    max_loan_amount: int
    assessed_at: datetime
    expires_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    overridden_by: Optional[str] = None
    overridden_at: Optional[datetime] = None
    notes: Optional[str] = None

    def __post_init__(self):
        _check_range("overall_score", self.overall_score, 0, 100)
        if self.max_loan_amount < 0:
            raise ValidationError("max_loan_amount must be non-negative", field="max_loan_amount")
        if not self.is_eligible and self.max_loan_amount != 0:
            raise ValidationError("Ineligible assessment cannot carry a loan ceiling", field="max_loan_amount")
        if self.is_eligible and self.rejection_reason is not None:
            raise ValidationError("Eligible assessment cannot carry a rejection reason", field="rejection_reason")
        if self.expires_at <= self.assessed_at:
            raise ValidationError("expires_at must be later than assessed_at", field="expires_at")

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class Loan:
    """One borrowing instance; mutated only through lifecycle transitions"""

    loan_id: str
    member_id: str
    group_id: str
    amount: int
    status: LoanStatus = LoanStatus.PENDING
    reason: Optional[str] = None
    interest_rate: Decimal = Decimal("0")
    repayment_period_months: int = 6
    eligibility_score: float = 0.0
    idempotency_key: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    disbursed_by: Optional[str] = None
    disburse_date: Optional[datetime] = None
    repaid_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    default_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if not isinstance(self.amount, int) or isinstance(self.amount, bool) or self.amount <= 0:
            raise ValidationError("Loan amount must be a positive integer", field="amount")
        if not Decimal("0") <= Decimal(self.interest_rate) <= Decimal("100"):
            raise ValidationError("Interest rate must be between 0 and 100", field="interest_rate")
        if not 1 <= self.repayment_period_months <= 60:
            raise ValidationError(
                "Repayment period must be between 1 and 60 months", field="repayment_period_months"
            )
        unapproved = self.status in (LoanStatus.PENDING, LoanStatus.REJECTED)
        if unapproved == (self.approved_by is not None):
            raise ValidationError(
                f"approved_by must be set exactly when status is past approval (status={self.status.value})",
                field="approved_by",
            )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_LOAN_STATUSES


@dataclass(frozen=True)
class PenaltyConfig:
    """Late fee policy attached to a schedule at creation"""

    late_fee_percent: Decimal = Decimal("2")
    late_fee_fixed: int = 0
    grace_days: int = 5
    max_penalty_percent: Decimal = Decimal("10")

    def __post_init__(self):
        _check_range("late_fee_percent", self.late_fee_percent, 0, 100)
        _check_range("max_penalty_percent", self.max_penalty_percent, 0, 100)
        if self.late_fee_fixed < 0:
            raise ValidationError("late_fee_fixed must be non-negative", field="late_fee_fixed")
        if self.grace_days < 0:
            raise ValidationError("grace_days must be non-negative", field="grace_days")


@dataclass(frozen=True)
class Payment:
    """Money applied to one installment"""

    installment_number: int
    amount: int
    paid_at: datetime
    method: str
    reference: Optional[str] = None


@dataclass
class Installment:
    """One scheduled repayment slice"""

    number: int
    due_date: date
    principal: int
    interest: int
    total_amount: int
    paid_amount: int = 0
    penalties: int = 0
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_at: Optional[datetime] = None
    payments: List[Payment] = field(default_factory=list)

    @property
    def amount_due(self) -> int:
        """Unpaid balance including accrued penalties"""
        return max(self.total_amount + self.penalties - self.paid_amount, 0)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_INSTALLMENT_STATUSES


@dataclass
class RepaymentSchedule:
    """Installment plan for a disbursed loan"""

    schedule_id: str
    loan_id: str
    installments: List[Installment]
    total_principal: int
    total_interest: int
    total_amount: int
    penalty_config: PenaltyConfig = field(default_factory=PenaltyConfig)
    total_paid: int = 0
    total_penalties: int = 0
    outstanding_amount: int = 0
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in (ScheduleStatus.COMPLETED, ScheduleStatus.DEFAULTED)

    def installment(self, number: int) -> Installment:
        for inst in self.installments:
            if inst.number == number:
                return inst
        raise ValidationError(f"Installment {number} not found", field="installment_number")


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record of a transition attempt or scoring decision"""

    action: AuditAction
    member_id: str
    actor_id: str
    actor_role: ActorRole
    group_id: Optional[str] = None
    loan_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    amount: Optional[int] = None
    status: AuditStatus = AuditStatus.SUCCESS
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    entry_id: Optional[int] = None
    created_at: Optional[datetime] = None


def snapshot(obj: Any) -> Any:
    """JSON-safe copy of a dataclass (or nested value) for audit before/after"""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: snapshot(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: snapshot(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [snapshot(v) for v in obj]
    return obj


def _check_range(name: str, value, low, high) -> None:
    if not low <= value <= high:
        raise ValidationError(f"{name} must be between {low} and {high}", field=name)
