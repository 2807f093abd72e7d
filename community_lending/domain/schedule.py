"""Repayment schedule engine - installment plans, payments and late penalties"""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from community_lending.domain.exceptions import ConflictError, ValidationError
from community_lending.domain.models import (
    Installment,
    InstallmentStatus,
    Loan,
    Payment,
    PenaltyConfig,
    RepaymentSchedule,
    ScheduleStatus,
)
from community_lending.utils.date_utils import add_months, days_overdue, ensure_utc


def _round_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_amount(total: int, count: int) -> List[int]:
    """
    Split `total` minor units into `count` slices of ceil(total / count).

    The tail absorbs the rounding remainder downward so the slices always
    sum to `total` exactly. When ceil slices would leave trailing slices
    empty, the remainder is spread one unit at a time from the front.

    Example:
        1000 / 3 -> [334, 334, 332]
        7 / 6 -> [2, 1, 1, 1, 1, 1]
    """
    if count <= 0:
        raise ValidationError("Installment count must be positive", field="repayment_period_months")
    per_slice = -(-total // count)
    if per_slice * (count - 1) >= total:
        base, extra = divmod(total, count)
        return [base + 1 if i < extra else base for i in range(count)]
    slices = []
    remaining = total
    for _ in range(count):
        amount = min(per_slice, remaining)
        slices.append(amount)
        remaining -= amount
    return slices


def calculate_flat_interest(principal: int, interest_rate: Decimal, months: int) -> int:
    """Flat annual rate charged on the original principal over the term"""
    interest = Decimal(principal) * Decimal(interest_rate) / Decimal(100) * Decimal(months) / Decimal(12)
    return _round_minor(interest)


def generate_schedule(
    loan: Loan,
    schedule_id: str,
    disburse_date: datetime,
    penalty_config: Optional[PenaltyConfig] = None,
) -> RepaymentSchedule:
    """
    Build the installment plan for a freshly disbursed loan.

    Requirements:
    - One installment per month of `repayment_period_months`
    - Principal and interest each split with ceil(x / count), the last
      installment absorbing the remainder so totals reconcile exactly
    - Due dates are disburse_date + i calendar months, i = 1..count
    """
    count = loan.repayment_period_months
    if loan.amount < count:
        raise ValidationError(
            "Loan amount must cover at least one minor unit per installment", field="amount"
        )

    total_interest = calculate_flat_interest(loan.amount, loan.interest_rate, count)
    principals = split_amount(loan.amount, count)
    interests = split_amount(total_interest, count)
    start = ensure_utc(disburse_date).date()

    installments = [
        Installment(
            number=i + 1,
            due_date=add_months(start, i + 1),
            principal=principal,
            interest=interest,
            total_amount=principal + interest,
        )
        for i, (principal, interest) in enumerate(zip(principals, interests))
    ]

    schedule = RepaymentSchedule(
        schedule_id=schedule_id,
        loan_id=loan.loan_id,
        installments=installments,
        total_principal=loan.amount,
        total_interest=total_interest,
        total_amount=loan.amount + total_interest,
        penalty_config=penalty_config or PenaltyConfig(),
        outstanding_amount=loan.amount + total_interest,
        created_at=disburse_date,
    )
    validate_totals(schedule)
    return schedule


def validate_totals(schedule: RepaymentSchedule) -> None:
    """Check aggregate fields against the installment rows"""
    if sum(i.total_amount for i in schedule.installments) != schedule.total_amount:
        raise ValidationError("Installment totals do not sum to the schedule total")
    if sum(i.principal for i in schedule.installments) != schedule.total_principal:
        raise ValidationError("Installment principals do not sum to the schedule principal")
    if sum(i.paid_amount for i in schedule.installments) != schedule.total_paid:
        raise ValidationError("Installment payments do not sum to the schedule total paid")
    if sum(i.penalties for i in schedule.installments) != schedule.total_penalties:
        raise ValidationError("Installment penalties do not sum to the schedule total penalties")
    if schedule.outstanding_amount != schedule.total_amount - schedule.total_paid + schedule.total_penalties:
        raise ValidationError("Outstanding amount is out of sync with totals")
    if schedule.outstanding_amount < 0:
        raise ValidationError("Outstanding amount cannot be negative")


def _refresh_outstanding(schedule: RepaymentSchedule) -> None:
    schedule.outstanding_amount = schedule.total_amount - schedule.total_paid + schedule.total_penalties


def _require_active(schedule: RepaymentSchedule, operation: str) -> None:
    if schedule.status != ScheduleStatus.ACTIVE:
        raise ConflictError(
            f"Cannot {operation} on a schedule in status '{schedule.status.value}'",
            {"schedule_status": schedule.status.value},
        )


def _mark_completed_if_settled(schedule: RepaymentSchedule, now: datetime) -> bool:
    if all(inst.is_settled for inst in schedule.installments):
        schedule.status = ScheduleStatus.COMPLETED
        schedule.completed_at = now
        return True
    return False


def record_payment(
    schedule: RepaymentSchedule,
    installment_number: int,
    amount: int,
    method: str,
    reference: Optional[str],
    now: datetime,
) -> Payment:
    """
    Apply a payment to one installment.

    The installment becomes `paid` once its paid amount covers its total
    amount, otherwise `partially_paid`. Accrued penalties stay in the
    outstanding amount and may be paid on a `paid` installment until
    the schedule closes. When every installment is paid or forgiven the
    schedule becomes `completed`.
    """
    _require_active(schedule, "record a payment")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Payment amount must be a positive integer", field="amount")

    inst = schedule.installment(installment_number)
    if inst.amount_due == 0:
        raise ConflictError(f"Installment {installment_number} is already {inst.status.value} with nothing due")
    if amount > inst.amount_due:
        raise ValidationError(
            f"Payment of {amount} exceeds the {inst.amount_due} due on installment {installment_number}",
            field="amount",
        )

    payment = Payment(
        installment_number=installment_number,
        amount=amount,
        paid_at=now,
        method=method,
        reference=reference,
    )
    inst.paid_amount += amount
    inst.payments.append(payment)
    schedule.total_paid += amount
    _refresh_outstanding(schedule)

    if inst.paid_amount >= inst.total_amount:
        if inst.status != InstallmentStatus.PAID:
            inst.status = InstallmentStatus.PAID
            inst.paid_at = now
    else:
        inst.status = InstallmentStatus.PARTIALLY_PAID

    _mark_completed_if_settled(schedule, now)
    return payment


def allocate_payment(
    schedule: RepaymentSchedule,
    amount: int,
    method: str,
    reference: Optional[str],
    now: datetime,
) -> List[Payment]:
    """Spread a payment over the oldest installments with anything due, penalties included"""
    _require_active(schedule, "record a payment")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Payment amount must be a positive integer", field="amount")
    if amount > schedule.outstanding_amount:
        raise ValidationError(
            f"Payment of {amount} exceeds the outstanding amount of {schedule.outstanding_amount}",
            field="amount",
        )

    payments = []
    remaining = amount
    for inst in sorted(schedule.installments, key=lambda i: i.number):
        if remaining == 0:
            break
        if inst.amount_due == 0:
            continue
        portion = min(inst.amount_due, remaining)
        payments.append(record_payment(schedule, inst.number, portion, method, reference, now))
        remaining -= portion
    return payments


def find_payments_by_reference(schedule: RepaymentSchedule, reference: str) -> List[Payment]:
    return [p for inst in schedule.installments for p in inst.payments if p.reference == reference]


def calculate_penalties(schedule: RepaymentSchedule, now: datetime) -> int:
    """
    Recompute late fees as of `now` and return the newly added total.

    penalty = min(outstanding * late_fee_percent / 100 + late_fee_fixed,
                  total_principal * max_penalty_percent / 100)

    Only the increase over an installment's recorded penalty is added, so
    re-running without new overdue time adds nothing.
    """
    if schedule.is_terminal:
        return 0

    config = schedule.penalty_config
    cap = _round_minor(Decimal(schedule.total_principal) * config.max_penalty_percent / Decimal(100))
    added_total = 0

    for inst in schedule.installments:
        if inst.is_settled:
            continue
        overdue = days_overdue(inst.due_date, now)
        if overdue <= 0:
            continue
        inst.status = InstallmentStatus.OVERDUE
        if overdue <= config.grace_days:
            continue

        outstanding_on_installment = max(inst.total_amount - inst.paid_amount, 0)
        percent_fee = Decimal(outstanding_on_installment) * config.late_fee_percent / Decimal(100)
        penalty = min(_round_minor(percent_fee) + config.late_fee_fixed, cap)

        added = max(0, penalty - inst.penalties)
        inst.penalties += added
        added_total += added

    schedule.total_penalties += added_total
    _refresh_outstanding(schedule)
    return added_total


def forgive_penalties(schedule: RepaymentSchedule, installment_number: int) -> int:
    """Waive the unpaid penalty on one installment; allowed on terminal schedules"""
    inst = schedule.installment(installment_number)
    forgivable = min(inst.penalties, inst.amount_due)
    if forgivable == 0:
        raise ConflictError(f"Installment {installment_number} has no unpaid penalty to forgive")

    inst.penalties -= forgivable
    schedule.total_penalties -= forgivable
    _refresh_outstanding(schedule)
    return forgivable


def mark_defaulted(schedule: RepaymentSchedule, now: datetime) -> None:
    _require_active(schedule, "mark default")
    schedule.status = ScheduleStatus.DEFAULTED
    schedule.defaulted_at = now


def next_due_installment(schedule: RepaymentSchedule, now: datetime) -> Optional[Installment]:
    """Earliest unsettled installment already due"""
    today = ensure_utc(now).date()
    for inst in sorted(schedule.installments, key=lambda i: i.number):
        if not inst.is_settled and inst.due_date <= today:
            return inst
    return None


def upcoming_installments(schedule: RepaymentSchedule, now: datetime, days: int = 30) -> List[Installment]:
    today = ensure_utc(now).date()
    horizon = today + timedelta(days=days)
    return [
        inst
        for inst in schedule.installments
        if not inst.is_settled and today < inst.due_date <= horizon
    ]


def payment_summary(schedule: RepaymentSchedule) -> Dict[str, Any]:
    """Totals, percent paid and next due date for display"""
    payable = schedule.total_amount + schedule.total_penalties
    percent = Decimal(schedule.total_paid) * 100 / Decimal(payable) if payable else Decimal(0)
    unsettled = [inst for inst in schedule.installments if not inst.is_settled]
    next_due = min((inst.due_date for inst in unsettled), default=None)
    return {
        "total_amount": schedule.total_amount,
        "total_paid": schedule.total_paid,
        "total_penalties": schedule.total_penalties,
        "outstanding_amount": schedule.outstanding_amount,
        "payment_percentage": _round_minor(percent),
        "installments_paid": sum(1 for inst in schedule.installments if inst.is_settled),
        "installments_total": len(schedule.installments),
        "next_due_date": next_due,
        "status": schedule.status,
    }
