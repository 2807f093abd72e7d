"""Loan lifecycle state machine - forward-only transitions with guards"""

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from community_lending.domain.exceptions import ConflictError, ValidationError
from community_lending.domain.models import AuditAction, Loan, LoanStatus, StringEnum


class LoanEvent(StringEnum):
    APPROVE = "approve"
    REJECT = "reject"
    DISBURSE = "disburse"
    COMPLETE = "complete"
    DEFAULT = "default"


class Effect(StringEnum):
    GENERATE_SCHEDULE = "generate_schedule"
    DEFAULT_SCHEDULE = "default_schedule"


TRANSITIONS: Dict[Tuple[LoanStatus, LoanEvent], LoanStatus] = {
    (LoanStatus.PENDING, LoanEvent.APPROVE): LoanStatus.APPROVED,
    (LoanStatus.PENDING, LoanEvent.REJECT): LoanStatus.REJECTED,
    (LoanStatus.APPROVED, LoanEvent.DISBURSE): LoanStatus.DISBURSED,
    (LoanStatus.DISBURSED, LoanEvent.COMPLETE): LoanStatus.REPAID,
    (LoanStatus.DISBURSED, LoanEvent.DEFAULT): LoanStatus.DEFAULTED,
}

EFFECTS: Dict[LoanEvent, Tuple[Effect, ...]] = {
    LoanEvent.DISBURSE: (Effect.GENERATE_SCHEDULE,),
    LoanEvent.DEFAULT: (Effect.DEFAULT_SCHEDULE,),
}

AUDIT_ACTIONS: Dict[LoanEvent, AuditAction] = {
    LoanEvent.APPROVE: AuditAction.LOAN_APPROVED,
    LoanEvent.REJECT: AuditAction.LOAN_REJECTED,
    LoanEvent.DISBURSE: AuditAction.LOAN_DISBURSED,
    LoanEvent.COMPLETE: AuditAction.LOAN_COMPLETED,
    LoanEvent.DEFAULT: AuditAction.LOAN_DEFAULTED,
}


@dataclass(frozen=True)
class Transition:
    """Result of applying an event: the new loan value plus follow-up effects"""

    event: LoanEvent
    previous: Loan
    loan: Loan
    effects: Tuple[Effect, ...] = ()

    @property
    def audit_action(self) -> AuditAction:
        return AUDIT_ACTIONS[self.event]


def next_status(current: LoanStatus, event: LoanEvent) -> LoanStatus:
    """Look up the target state, raising ConflictError for any undefined pair"""
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise ConflictError(
            f"Cannot {event.value} a loan in status '{current.value}'",
            {"current_status": current.value, "event": event.value},
        ) from None


def require_status(loan: Loan, status: LoanStatus, operation: str) -> None:
    if loan.status != status:
        raise ConflictError(
            f"Cannot {operation} a loan in status '{loan.status.value}'",
            {"current_status": loan.status.value, "required_status": status.value},
        )


def _transition(loan: Loan, event: LoanEvent, now: datetime, **changes) -> Transition:
    target = next_status(loan.status, event)
    updated = dataclasses.replace(loan, status=target, updated_at=now, **changes)
    return Transition(event=event, previous=loan, loan=updated, effects=EFFECTS.get(event, ()))


def approve(
    loan: Loan,
    actor_id: str,
    interest_rate,
    repayment_period_months: int,
    now: datetime,
) -> Transition:
    next_status(loan.status, LoanEvent.APPROVE)
    try:
        rate = Decimal(str(interest_rate))
    except (InvalidOperation, ValueError):
        raise ValidationError("Interest rate must be a number", field="interest_rate") from None
    if not rate.is_finite():
        raise ValidationError("Interest rate must be a finite number", field="interest_rate")
    if not Decimal("0") <= rate <= Decimal("100"):
        raise ValidationError("Interest rate must be between 0 and 100", field="interest_rate")
    if isinstance(repayment_period_months, bool) or not isinstance(repayment_period_months, int):
        raise ValidationError("Repayment period must be a whole number of months", field="repayment_period_months")
    if not 1 <= repayment_period_months <= 60:
        raise ValidationError(
            "Repayment period must be between 1 and 60 months", field="repayment_period_months"
        )
    return _transition(
        loan,
        LoanEvent.APPROVE,
        now,
        interest_rate=rate,
        repayment_period_months=repayment_period_months,
        approved_by=actor_id,
        approved_at=now,
    )


def reject(loan: Loan, actor_id: str, reason: Optional[str], now: datetime) -> Transition:
    next_status(loan.status, LoanEvent.REJECT)
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required", field="reason")
    return _transition(
        loan,
        LoanEvent.REJECT,
        now,
        rejected_by=actor_id,
        rejected_at=now,
        rejection_reason=reason.strip(),
    )


def disburse(loan: Loan, actor_id: str, now: datetime) -> Transition:
    return _transition(loan, LoanEvent.DISBURSE, now, disbursed_by=actor_id, disburse_date=now)


def complete(loan: Loan, now: datetime) -> Transition:
    return _transition(loan, LoanEvent.COMPLETE, now, repaid_at=now)


def default(loan: Loan, reason: Optional[str], now: datetime) -> Transition:
    next_status(loan.status, LoanEvent.DEFAULT)
    if not reason or not reason.strip():
        raise ValidationError("A default reason is required", field="reason")
    return _transition(loan, LoanEvent.DEFAULT, now, defaulted_at=now, default_reason=reason.strip())
