"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from community_lending.domain.models import (
    AuditEntry,
    EligibilityAssessment,
    Installment,
    Loan,
    Payment,
    RepaymentSchedule,
)


# Requests


class OverrideRequest(BaseModel):
    """Request body for POST /v1/eligibility/override"""

    member_id: str = Field(..., min_length=1)
    group_id: str = Field(..., min_length=1)
    is_eligible: bool
    actor_id: str = Field(..., min_length=1, description="Admin forcing the verdict")
    notes: Optional[str] = None


class LoanApplicationRequest(BaseModel):
    """Request body for POST /v1/loans"""

    member_id: str = Field(..., min_length=1, description="Borrowing member")
    group_id: str = Field(..., min_length=1, description="Savings group lending the funds")
    amount: int = Field(..., description="Requested principal in minor units")
    reason: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)
    actor_id: Optional[str] = Field(None, description="Defaults to the member")


class ApproveRequest(BaseModel):
    """Request body for POST /v1/loans/{loan_id}/approve"""

    actor_id: str = Field(..., min_length=1)
    interest_rate: Decimal = Field(..., description="Flat annual rate, percent")
    repayment_period_months: int


class ReasonRequest(BaseModel):
    """Request body for reject and default transitions"""

    actor_id: str = Field(..., min_length=1)
    reason: str


class ActorRequest(BaseModel):
    """Request body carrying only the acting member"""

    actor_id: str = Field(..., min_length=1)


class PaymentRequest(BaseModel):
    """Request body for POST /v1/loans/{loan_id}/payments"""

    actor_id: str = Field(..., min_length=1)
    amount: int = Field(..., description="Payment in minor units")
    method: str = Field(..., min_length=1)
    reference: Optional[str] = Field(None, description="External payment reference; repeats are not re-applied")
    installment_number: Optional[int] = Field(None, description="Target installment; oldest first when omitted")


class ForgivePenaltyRequest(BaseModel):
    """Request body for POST /v1/loans/{loan_id}/penalties/forgive"""

    actor_id: str = Field(..., min_length=1)
    installment_number: int


# Responses


class ScoreComponentsSchema(BaseModel):
    contribution_score: float
    participation_score: float
    repayment_score: float
    risk_score: float


class EligibilityResponse(BaseModel):
    """Response for eligibility checks and overrides"""

    assessment_id: str
    member_id: str
    group_id: str
    is_eligible: bool
    overall_score: float
    max_loan_amount: int
    rejection_reason: Optional[str] = None
    components: ScoreComponentsSchema
    metadata: Dict[str, Any]
    assessed_at: datetime
    expires_at: datetime
    overridden_by: Optional[str] = None
    notes: Optional[str] = None
    cached: bool = False

    @classmethod
    def from_domain(cls, assessment: EligibilityAssessment, cached: bool = False) -> "EligibilityResponse":
        c = assessment.components
        return cls(
            assessment_id=assessment.assessment_id,
            member_id=assessment.member_id,
            group_id=assessment.group_id,
            is_eligible=assessment.is_eligible,
            overall_score=assessment.overall_score,
            max_loan_amount=assessment.max_loan_amount,
            rejection_reason=assessment.rejection_reason.value if assessment.rejection_reason else None,
            components=ScoreComponentsSchema(
                contribution_score=c.contribution_score,
                participation_score=c.participation_score,
                repayment_score=c.repayment_score,
                risk_score=c.risk_score,
            ),
            metadata=assessment.metadata,
            assessed_at=assessment.assessed_at,
            expires_at=assessment.expires_at,
            overridden_by=assessment.overridden_by,
            notes=assessment.notes,
            cached=cached,
        )


class LoanResponse(BaseModel):
    """Loan record as returned by every lifecycle endpoint"""

    loan_id: str
    member_id: str
    group_id: str
    amount: int
    status: str
    reason: Optional[str] = None
    interest_rate: float
    repayment_period_months: int
    eligibility_score: float
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
    version: int
    duplicate: bool = False

    @classmethod
    def from_domain(cls, loan: Loan, duplicate: bool = False) -> "LoanResponse":
        return cls(
            loan_id=loan.loan_id,
            member_id=loan.member_id,
            group_id=loan.group_id,
            amount=loan.amount,
            status=loan.status.value,
            reason=loan.reason,
            interest_rate=float(loan.interest_rate),
            repayment_period_months=loan.repayment_period_months,
            eligibility_score=loan.eligibility_score,
            idempotency_key=loan.idempotency_key,
            approved_by=loan.approved_by,
            approved_at=loan.approved_at,
            rejected_by=loan.rejected_by,
            rejected_at=loan.rejected_at,
            rejection_reason=loan.rejection_reason,
            disbursed_by=loan.disbursed_by,
            disburse_date=loan.disburse_date,
            repaid_at=loan.repaid_at,
            defaulted_at=loan.defaulted_at,
            default_reason=loan.default_reason,
            created_at=loan.created_at,
            version=loan.version,
            duplicate=duplicate,
        )


class PaymentSchema(BaseModel):
    installment_number: int
    amount: int
    paid_at: datetime
    method: str
    reference: Optional[str] = None

    @classmethod
    def from_domain(cls, payment: Payment) -> "PaymentSchema":
        return cls(
            installment_number=payment.installment_number,
            amount=payment.amount,
            paid_at=payment.paid_at,
            method=payment.method,
            reference=payment.reference,
        )


class InstallmentSchema(BaseModel):
    """Single installment in a repayment schedule"""

    number: int
    due_date: date
    principal: int
    interest: int
    total_amount: int
    paid_amount: int
    penalties: int
    amount_due: int
    status: str
    paid_at: Optional[datetime] = None
    payments: List[PaymentSchema]

    @classmethod
    def from_domain(cls, inst: Installment) -> "InstallmentSchema":
        return cls(
            number=inst.number,
            due_date=inst.due_date,
            principal=inst.principal,
            interest=inst.interest,
            total_amount=inst.total_amount,
            paid_amount=inst.paid_amount,
            penalties=inst.penalties,
            amount_due=inst.amount_due,
            status=inst.status.value,
            paid_at=inst.paid_at,
            payments=[PaymentSchema.from_domain(p) for p in inst.payments],
        )


class ScheduleSummarySchema(BaseModel):
    total_amount: int
    total_paid: int
    total_penalties: int
    outstanding_amount: int
    payment_percentage: int
    installments_paid: int
    installments_total: int
    next_due_date: Optional[date] = None
    status: str


class ScheduleResponse(BaseModel):
    """Response for GET /v1/loans/{loan_id}/schedule"""

    schedule_id: str
    loan_id: str
    status: str
    total_principal: int
    total_interest: int
    total_amount: int
    total_paid: int
    total_penalties: int
    outstanding_amount: int
    late_fee_percent: float
    late_fee_fixed: int
    grace_days: int
    max_penalty_percent: float
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    installments: List[InstallmentSchema]
    summary: ScheduleSummarySchema

    @classmethod
    def from_domain(cls, schedule: RepaymentSchedule, summary: Dict[str, Any]) -> "ScheduleResponse":
        config = schedule.penalty_config
        return cls(
            schedule_id=schedule.schedule_id,
            loan_id=schedule.loan_id,
            status=schedule.status.value,
            total_principal=schedule.total_principal,
            total_interest=schedule.total_interest,
            total_amount=schedule.total_amount,
            total_paid=schedule.total_paid,
            total_penalties=schedule.total_penalties,
            outstanding_amount=schedule.outstanding_amount,
            late_fee_percent=float(config.late_fee_percent),
            late_fee_fixed=config.late_fee_fixed,
            grace_days=config.grace_days,
            max_penalty_percent=float(config.max_penalty_percent),
            completed_at=schedule.completed_at,
            defaulted_at=schedule.defaulted_at,
            installments=[InstallmentSchema.from_domain(i) for i in schedule.installments],
            summary=ScheduleSummarySchema(**{**summary, "status": summary["status"].value}),
        )


class DisbursementResponse(BaseModel):
    """Loan plus the schedule created for it (also used for defaults)"""

    loan: LoanResponse
    schedule: ScheduleResponse


class PaymentResponse(BaseModel):
    """Response for POST /v1/loans/{loan_id}/payments"""

    loan: LoanResponse
    schedule: ScheduleResponse
    payments: List[PaymentSchema]
    duplicate: bool = False


class PenaltyResponse(BaseModel):
    """Response for penalty recalculation and forgiveness"""

    schedule: ScheduleResponse
    amount: int


class LoanListResponse(BaseModel):
    """Response for GET /v1/members/{member_id}/loans"""

    member_id: str
    loans: List[LoanResponse]


class AuditEntrySchema(BaseModel):
    entry_id: Optional[int] = None
    action: str
    status: str
    loan_id: Optional[str] = None
    member_id: str
    group_id: Optional[str] = None
    actor_id: str
    actor_role: str
    amount: Optional[int] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    metadata: Dict[str, Any]
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntrySchema":
        return cls(
            entry_id=entry.entry_id,
            action=entry.action.value,
            status=entry.status.value,
            loan_id=entry.loan_id,
            member_id=entry.member_id,
            group_id=entry.group_id,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role.value,
            amount=entry.amount,
            before=entry.before,
            after=entry.after,
            description=entry.description,
            metadata=entry.metadata,
            error_message=entry.error_message,
            error_code=entry.error_code,
            created_at=entry.created_at,
        )


class AuditResponse(BaseModel):
    """Response for GET /v1/audit"""

    entries: List[AuditEntrySchema]


class ErrorResponse(BaseModel):
    """Body returned for every domain error"""

    error: str
    message: str
    details: Dict[str, Any] = {}
