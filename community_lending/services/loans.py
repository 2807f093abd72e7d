"""Loan lifecycle service - applies state machine transitions with audit and concurrency guards"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from community_lending.config import settings
from community_lending.domain import lifecycle
from community_lending.domain.access import require_privileged, require_self_or_privileged
from community_lending.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    DomainException,
    IneligibleError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from community_lending.domain.models import (
    ActorRole,
    AuditAction,
    AuditEntry,
    AuditStatus,
    Loan,
    LoanStatus,
    Payment,
    PenaltyConfig,
    RepaymentSchedule,
    ScheduleStatus,
    snapshot,
)
from community_lending.domain.schedule import (
    allocate_payment,
    calculate_penalties,
    forgive_penalties,
    generate_schedule,
    mark_defaulted,
    payment_summary,
    record_payment,
)
from community_lending.domain.scoring import ScoringConfig
from community_lending.infrastructure.database.repositories import (
    LoanRepository,
    MemberRepository,
    ScheduleRepository,
)
from community_lending.infrastructure.observability.logging import log_transition
from community_lending.infrastructure.observability.metrics import penalty_counter, transition_counter
from community_lending.services.audit import AuditTrail, BestEffortAuditWriter
from community_lending.services.eligibility import EligibilityCache, EligibilityScorer
from community_lending.services.idempotency import ApplicationResult, IdempotencyGuard
from community_lending.utils.date_utils import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_ACTOR = "system"


def penalty_config_from_settings() -> PenaltyConfig:
    return PenaltyConfig(
        late_fee_percent=Decimal(str(settings.late_fee_percent)),
        late_fee_fixed=settings.late_fee_fixed,
        grace_days=settings.penalty_grace_days,
        max_penalty_percent=Decimal(str(settings.max_penalty_percent)),
    )


@dataclass
class PaymentResult:
    """Outcome of recording a payment"""

    loan: Loan
    schedule: RepaymentSchedule
    payments: List[Payment]
    duplicate: bool = False


@dataclass
class _AuditContext:
    """Subject of an attempt, filled in as the operation resolves it"""

    actor_id: str
    member_id: str
    group_id: Optional[str] = None
    loan_id: Optional[str] = None
    actor_role: ActorRole = ActorRole.USER
    amount: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def bind(self, loan: Loan) -> None:
        self.member_id = loan.member_id
        self.group_id = loan.group_id
        self.loan_id = loan.loan_id


class LoanService:
    """
    Orchestrates apply, approve, reject, disburse, repay, default and
    penalty operations.

    Each operation runs as one database transaction: the loan/schedule
    change and its audit entry commit together or not at all. A failed
    attempt rolls back and leaves a `failed` audit entry through the
    best-effort side channel before the error propagates.
    """

    def __init__(
        self,
        db: Session,
        side_channel: BestEffortAuditWriter,
        scoring_config: Optional[ScoringConfig] = None,
        penalty_config: Optional[PenaltyConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.side_channel = side_channel
        self.penalty_config = penalty_config or penalty_config_from_settings()
        self.clock = clock

        self.loans = LoanRepository(db)
        self.schedules = ScheduleRepository(db)
        self.members = MemberRepository(db)
        self.audit = AuditTrail(db)
        self.guard = IdempotencyGuard(self.loans)
        self.eligibility = EligibilityCache(
            db, EligibilityScorer(db, side_channel, scoring_config, clock), clock
        )

    # Transitions

    def apply(
        self,
        member_id: str,
        group_id: str,
        amount: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> ApplicationResult:
        """
        Create a pending loan after idempotency, membership and eligibility checks.

        A known idempotency key returns the earlier loan before any other
        check runs.
        """
        actor_id = actor_id or member_id
        ctx = _AuditContext(actor_id=actor_id, member_id=member_id, group_id=group_id, amount=amount)

        def operation() -> ApplicationResult:
            duplicate = self.guard.find_application(member_id, group_id, idempotency_key)
            if duplicate is not None:
                ctx.loan_id = duplicate.loan.loan_id
                return duplicate

            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise ValidationError("Loan amount must be a positive integer", field="amount")

            if self.members.get_member(member_id) is None:
                raise NotFoundError(f"Member {member_id} not found", {"member_id": member_id})
            ctx.actor_role = self._authorize(actor_id, group_id, member_id, "apply for a loan")

            if self.members.get_membership(member_id, group_id) is None:
                raise AuthorizationError(
                    f"Member {member_id} does not belong to group {group_id}",
                    {"member_id": member_id, "group_id": group_id},
                )

            active = self.loans.find_active(member_id, group_id)
            if active is not None:
                raise ConflictError(
                    "Member already has an active loan in this group",
                    {"loan_id": active.loan_id, "status": active.status.value},
                )

            assessment, cached = self.eligibility.get_eligibility(member_id, group_id, actor_id, ctx.actor_role)
            ctx.metadata.update({"assessment_id": assessment.assessment_id, "eligibility_cached": cached})
            if not assessment.is_eligible:
                reason_code = assessment.rejection_reason.value if assessment.rejection_reason else None
                raise IneligibleError(reason_code)
            if amount > assessment.max_loan_amount:
                raise ConflictError(
                    f"Requested amount {amount} exceeds the eligible maximum of {assessment.max_loan_amount}",
                    {"amount": amount, "max_loan_amount": assessment.max_loan_amount},
                )

            now = self.clock()
            loan = Loan(
                loan_id=str(uuid.uuid4()),
                member_id=member_id,
                group_id=group_id,
                amount=amount,
                reason=reason,
                repayment_period_months=settings.default_repayment_period_months,
                eligibility_score=assessment.overall_score,
                idempotency_key=idempotency_key,
                created_at=now,
                updated_at=now,
            )
            try:
                with self.db.begin_nested():
                    self.loans.add(loan)
            except IntegrityError:
                # Lost a race with a concurrent insert for the same member/group
                duplicate = self.guard.find_application(member_id, group_id, idempotency_key)
                if duplicate is not None:
                    ctx.loan_id = duplicate.loan.loan_id
                    return duplicate
                raise ConflictError(
                    "Member already has an active loan in this group",
                    {"member_id": member_id, "group_id": group_id},
                ) from None

            ctx.loan_id = loan.loan_id
            self._audit(AuditAction.LOAN_APPLIED, ctx, after=snapshot(loan), description=reason)
            return ApplicationResult(loan=loan, duplicate=False)

        return self._execute(AuditAction.LOAN_APPLIED, ctx, operation)

    def approve(self, loan_id: str, actor_id: str, interest_rate, repayment_period_months: int) -> Loan:
        ctx = _AuditContext(actor_id=actor_id, member_id=actor_id, loan_id=loan_id)

        def operation() -> Loan:
            loan = self._load_loan(loan_id, ctx)
            ctx.actor_role = self._authorize_privileged(actor_id, loan.group_id, "approve loans")
            transition = lifecycle.approve(loan, actor_id, interest_rate, repayment_period_months, self.clock())
            return self._apply_transition(transition, ctx)

        return self._execute(AuditAction.LOAN_APPROVED, ctx, operation)

    def reject(self, loan_id: str, actor_id: str, reason: Optional[str]) -> Loan:
        ctx = _AuditContext(actor_id=actor_id, member_id=actor_id, loan_id=loan_id)

        def operation() -> Loan:
            loan = self._load_loan(loan_id, ctx)
            ctx.actor_role = self._authorize_privileged(actor_id, loan.group_id, "reject loans")
            transition = lifecycle.reject(loan, actor_id, reason, self.clock())
            return self._apply_transition(transition, ctx, description=reason)

        return self._execute(AuditAction.LOAN_REJECTED, ctx, operation)

    def disburse(self, loan_id: str, actor_id: str) -> Tuple[Loan, RepaymentSchedule]:
        ctx = _AuditContext(actor_id=actor_id, member_id=actor_id, loan_id=loan_id)

        def operation() -> Tuple[Loan, RepaymentSchedule]:
            loan = self._load_loan(loan_id, ctx)
            ctx.actor_role = self._authorize_privileged(actor_id, loan.group_id, "disburse loans")
            now = self.clock()
            transition = lifecycle.disburse(loan, actor_id, now)
            schedule = generate_schedule(transition.loan, str(uuid.uuid4()), now, self.penalty_config)

            ctx.amount = loan.amount
            updated = self.loans.update(transition.loan, transition.previous)
            self.schedules.add(schedule)
            self._audit(
                transition.audit_action,
                ctx,
                before=snapshot(transition.previous),
                after={**snapshot(updated), "schedule": _schedule_snapshot(schedule)},
            )
            return updated, schedule

        return self._execute(AuditAction.LOAN_DISBURSED, ctx, operation)

    def record_payment(
        self,
        loan_id: str,
        amount: int,
        method: str,
        actor_id: str,
        reference: Optional[str] = None,
        installment_number: Optional[int] = None,
    ) -> PaymentResult:
        """
        Apply a payment to a disbursed loan's schedule.

        Without an installment number the amount is allocated to the
        oldest unsettled installments. When the schedule completes, the
        loan moves to `repaid` in the same transaction.
        """
        ctx = _AuditContext(actor_id=actor_id, member_id=actor_id, loan_id=loan_id, amount=amount)

        def operation() -> PaymentResult:
            loan = self._load_loan(loan_id, ctx)
            ctx.actor_role = self._authorize(actor_id, loan.group_id, loan.member_id, "record payments")
            lifecycle.require_status(loan, LoanStatus.DISBURSED, "record a payment on")
            schedule = self._load_schedule(loan_id)

            existing = self.guard.find_payment(schedule, reference)
            if existing:
                return PaymentResult(loan=loan, schedule=schedule, payments=existing, duplicate=True)

            before = _schedule_snapshot(schedule)
            expected_version = schedule.version
            now = self.clock()
            if installment_number is None:
                payments = allocate_payment(schedule, amount, method, reference, now)
            else:
                payments = [record_payment(schedule, installment_number, amount, method, reference, now)]
            self.schedules.save(schedule, expected_version)

            ctx.metadata.update({"method": method, "reference": reference})
            ctx.metadata["installments"] = [p.installment_number for p in payments]
            self._audit(AuditAction.PAYMENT_RECORDED, ctx, before=before, after=_schedule_snapshot(schedule))

            if schedule.status == ScheduleStatus.COMPLETED:
                loan = self._complete(loan, ctx)
            return PaymentResult(loan=loan, schedule=schedule, payments=payments)

        return self._execute(AuditAction.PAYMENT_RECORDED, ctx, operation)

    def mark_default(self, loan_id: str, actor_id: str, reason: Optional[str]) -> Tuple[Loan, RepaymentSchedule]:
        ctx = _AuditContext(actor_id=actor_id, member_id=actor_id, loan_id=loan_id)

        def operation() -> Tuple[Loan, RepaymentSchedule]:
            loan = self._load_loan(loan_id, ctx)
            ctx.actor_role = self._authorize_privileged(actor_id, loan.group_id, "mark loans as defaulted")
            now = self.clock()
            transition = lifecycle.default(loan, reason, now)
            schedule = self._load_schedule(loan_id)

            expected_version = schedule.version
            if lifecycle.Effect.DEFAULT_SCHEDULE in transition.effects:
                mark_defaulted(schedule, now)
            updated = self.loans.update(transition.loan, transition.previous)
            self.schedules.save(schedule, expected_version)

            ctx.amount = schedule.outstanding_amount
            self._audit(
                transition.audit_action,
                ctx,
                before=snapshot(transition.previous),
                after=snapshot(updated),
                description=reason,
            )
            return updated, schedule

        return self._execute(AuditAction.LOAN_DEFAULTED, ctx, operation)

    def forgive_penalties(self, loan_id: str, installment_number: int, actor_id: str) -> Tuple[RepaymentSchedule, int]:
        """Waive one installment's unpaid penalty; works on terminal schedules too"""
        ctx = _AuditContext(actor_id=actor_id, member_id=actor_id, loan_id=loan_id)

        def operation() -> Tuple[RepaymentSchedule, int]:
            loan = self._load_loan(loan_id, ctx)
            ctx.actor_role = self._authorize_privileged(actor_id, loan.group_id, "forgive penalties")
            schedule = self._load_schedule(loan_id)

            before = _schedule_snapshot(schedule)
            expected_version = schedule.version
            forgiven = forgive_penalties(schedule, installment_number)
            self.schedules.save(schedule, expected_version)

            ctx.amount = forgiven
            ctx.metadata["installment_number"] = installment_number
            self._audit(AuditAction.PENALTY_FORGIVEN, ctx, before=before, after=_schedule_snapshot(schedule))

            return schedule, forgiven

        return self._execute(AuditAction.PENALTY_FORGIVEN, ctx, operation)

    def recalculate_penalties(self, loan_id: str, actor_id: str = SYSTEM_ACTOR) -> Tuple[RepaymentSchedule, int]:
        """Bring one schedule's late fees up to date; safe to re-run"""
        ctx = _AuditContext(actor_id=actor_id, member_id=actor_id, loan_id=loan_id, actor_role=ActorRole.SYSTEM)

        def operation() -> Tuple[RepaymentSchedule, int]:
            loan = self._load_loan(loan_id, ctx)
            if actor_id != SYSTEM_ACTOR:
                ctx.actor_role = self._authorize_privileged(actor_id, loan.group_id, "recalculate penalties")
            schedule = self._load_schedule(loan_id)

            before = _schedule_snapshot(schedule)
            expected_version = schedule.version
            added = calculate_penalties(schedule, self.clock())
            if not schedule.is_terminal:
                self.schedules.save(schedule, expected_version)

            if added:
                penalty_counter.inc(added)
                ctx.amount = added
                self._audit(AuditAction.PENALTY_APPLIED, ctx, before=before, after=_schedule_snapshot(schedule))
            return schedule, added

        return self._execute(AuditAction.PENALTY_APPLIED, ctx, operation)

    # Reads

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.loans.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def get_schedule(self, loan_id: str) -> Tuple[RepaymentSchedule, Dict[str, Any]]:
        self.get_loan(loan_id)
        schedule = self._load_schedule(loan_id)
        return schedule, payment_summary(schedule)

    def list_member_loans(self, member_id: str, group_id: Optional[str] = None) -> List[Loan]:
        return self.loans.list_for_member(member_id, group_id)

    # Internals

    def _execute(self, action: AuditAction, ctx: _AuditContext, operation: Callable[[], T]) -> T:
        start_time = time.time()
        try:
            result = operation()
            self.db.commit()

        except DomainException as e:
            self.db.rollback()
            self._finish_failed(action, ctx, e, start_time)
            logger.warning(
                f"{action.value} rejected: {e.message}",
                extra={"loan_id": ctx.loan_id, "actor_id": ctx.actor_id, "error_code": e.code},
            )
            raise

        except SQLAlchemyError as e:
            self.db.rollback()
            error = InternalError(f"Storage failure during {action.value}; safe to retry")
            self._finish_failed(action, ctx, error, start_time)
            logger.exception(f"{action.value} failed", extra={"loan_id": ctx.loan_id, "actor_id": ctx.actor_id})
            raise error from e

        except Exception as e:
            self.db.rollback()
            error = InternalError(f"Unexpected failure during {action.value}; safe to retry")
            self._finish_failed(action, ctx, error, start_time)
            logger.exception(
                f"Unexpected error during {action.value}", extra={"loan_id": ctx.loan_id, "actor_id": ctx.actor_id}
            )
            raise error from e

        transition_counter.labels(action=action.value, outcome="success").inc()
        log_transition(action.value, ctx.loan_id, ctx.actor_id, "success", (time.time() - start_time) * 1000)
        return result

    def _finish_failed(self, action: AuditAction, ctx: _AuditContext, error: DomainException, start_time: float):
        self.side_channel.write(
            AuditEntry(
                action=action,
                member_id=ctx.member_id,
                group_id=ctx.group_id,
                loan_id=ctx.loan_id,
                actor_id=ctx.actor_id,
                actor_role=ctx.actor_role,
                amount=ctx.amount,
                status=AuditStatus.FAILED,
                metadata={**ctx.metadata, **snapshot(error.details)},
                error_message=error.message,
                error_code=error.code,
                created_at=self.clock(),
            )
        )
        transition_counter.labels(action=action.value, outcome="failed").inc()
        log_transition(
            action.value, ctx.loan_id, ctx.actor_id, "failed", (time.time() - start_time) * 1000, error.code
        )

    def _audit(
        self,
        action: AuditAction,
        ctx: _AuditContext,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> None:
        self.audit.record(
            AuditEntry(
                action=action,
                member_id=ctx.member_id,
                group_id=ctx.group_id,
                loan_id=ctx.loan_id,
                actor_id=ctx.actor_id,
                actor_role=ctx.actor_role,
                before=before,
                after=after,
                amount=ctx.amount,
                description=description,
                metadata=dict(ctx.metadata),
                created_at=self.clock(),
            )
        )

    def _apply_transition(self, transition: lifecycle.Transition, ctx: _AuditContext, description=None) -> Loan:
        updated = self.loans.update(transition.loan, transition.previous)
        ctx.amount = updated.amount
        self._audit(
            transition.audit_action,
            ctx,
            before=snapshot(transition.previous),
            after=snapshot(updated),
            description=description,
        )
        return updated

    def _complete(self, loan: Loan, ctx: _AuditContext) -> Loan:
        transition = lifecycle.complete(loan, self.clock())
        updated = self.loans.update(transition.loan, transition.previous)
        self._audit(transition.audit_action, ctx, before=snapshot(transition.previous), after=snapshot(updated))
        transition_counter.labels(action=transition.audit_action.value, outcome="success").inc()
        logger.info("Loan repaid", extra={"loan_id": loan.loan_id, "member_id": loan.member_id})
        return updated

    def _load_loan(self, loan_id: str, ctx: _AuditContext) -> Loan:
        loan = self.get_loan(loan_id)
        ctx.bind(loan)
        return loan

    def _load_schedule(self, loan_id: str) -> RepaymentSchedule:
        schedule = self.schedules.get_by_loan(loan_id)
        if schedule is None:
            raise NotFoundError(f"No repayment schedule for loan {loan_id}", {"loan_id": loan_id})
        return schedule

    def _actor(self, actor_id: str):
        actor = self.members.get_member(actor_id)
        if actor is None:
            raise AuthorizationError(f"Unknown actor {actor_id}", {"actor_id": actor_id})
        return actor

    def _authorize(self, actor_id: str, group_id: str, member_id: str, operation: str) -> ActorRole:
        actor = self._actor(actor_id)
        return require_self_or_privileged(actor, self.members.get_membership(actor_id, group_id), member_id, operation)

    def _authorize_privileged(self, actor_id: str, group_id: str, operation: str) -> ActorRole:
        actor = self._actor(actor_id)
        return require_privileged(actor, self.members.get_membership(actor_id, group_id), operation)


def _schedule_snapshot(schedule: RepaymentSchedule) -> Dict[str, Any]:
    summary = snapshot(payment_summary(schedule))
    summary["schedule_id"] = schedule.schedule_id
    summary["installments"] = [
        {"number": i.number, "status": i.status.value, "paid_amount": i.paid_amount, "penalties": i.penalties}
        for i in schedule.installments
    ]
    return summary
