"""Data access layer mapping ORM rows to domain dataclasses"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from community_lending.domain.exceptions import ConflictError
from community_lending.domain.models import (
    ACTIVE_LOAN_STATUSES,
    ActorRole,
    AuditAction,
    AuditEntry,
    AuditStatus,
    Contribution,
    EligibilityAssessment,
    GroupMembership,
    Installment,
    InstallmentStatus,
    Loan,
    LoanStatus,
    Member,
    MembershipRole,
    Payment,
    PenaltyConfig,
    RejectionReason,
    RepaymentSchedule,
    ScheduleStatus,
    ScoreComponents,
)
from community_lending.infrastructure.database.models import (
    AuditEntryRecord,
    ContributionRecord,
    EligibilityAssessmentRecord,
    GroupMembershipRecord,
    InstallmentPaymentRecord,
    InstallmentRecord,
    LoanRecord,
    MemberRecord,
    RepaymentScheduleRecord,
)
from community_lending.utils.date_utils import ensure_utc


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        return None


class MemberRepository:
    """Read-only access to the member store"""

    def __init__(self, db: Session):
        self.db = db

    def get_member(self, member_id: str) -> Optional[Member]:
        row = self.db.get(MemberRecord, member_id)
        if row is None:
            return None
        return Member(
            member_id=row.id,
            is_verified=row.is_verified,
            role=ActorRole(row.role),
            is_suspended=row.is_suspended,
        )

    def get_membership(self, member_id: str, group_id: str) -> Optional[GroupMembership]:
        row = self.db.get(GroupMembershipRecord, (member_id, group_id))
        if row is None:
            return None
        return GroupMembership(
            member_id=row.member_id,
            group_id=row.group_id,
            role=MembershipRole(row.role),
            joined_at=_utc(row.joined_at),
        )


class ContributionRepository:
    """Read-only access to the contribution store"""

    def __init__(self, db: Session):
        self.db = db

    def list_for_member(self, member_id: str, group_id: str) -> List[Contribution]:
        rows = self.db.scalars(
            select(ContributionRecord)
            .where(ContributionRecord.member_id == member_id, ContributionRecord.group_id == group_id)
            .order_by(ContributionRecord.contributed_at)
        ).all()
        return [
            Contribution(
                member_id=r.member_id,
                group_id=r.group_id,
                amount=r.amount,
                contributed_at=ensure_utc(r.contributed_at),
            )
            for r in rows
        ]


class AssessmentRepository:
    """Insert-only store of eligibility assessments"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, assessment: EligibilityAssessment) -> None:
        c = assessment.components
        self.db.add(
            EligibilityAssessmentRecord(
                id=uuid.UUID(assessment.assessment_id),
                member_id=assessment.member_id,
                group_id=assessment.group_id,
                overall_score=assessment.overall_score,
                contribution_score=c.contribution_score,
                participation_score=c.participation_score,
                repayment_score=c.repayment_score,
                risk_score=c.risk_score,
                is_eligible=assessment.is_eligible,
                rejection_reason=assessment.rejection_reason.value if assessment.rejection_reason else None,
                max_loan_amount=assessment.max_loan_amount,
                score_metadata=assessment.metadata,
                assessed_at=assessment.assessed_at,
                expires_at=assessment.expires_at,
                overridden_by=assessment.overridden_by,
                overridden_at=assessment.overridden_at,
                notes=assessment.notes,
            )
        )
        self.db.flush()

    def find_active(self, member_id: str, group_id: str, now: datetime) -> Optional[EligibilityAssessment]:
        """Newest unexpired assessment; concurrent writers resolve to the latest expiry"""
        row = self.db.scalars(
            select(EligibilityAssessmentRecord)
            .where(
                EligibilityAssessmentRecord.member_id == member_id,
                EligibilityAssessmentRecord.group_id == group_id,
                EligibilityAssessmentRecord.expires_at > now,
            )
            .order_by(
                EligibilityAssessmentRecord.expires_at.desc(),
                EligibilityAssessmentRecord.assessed_at.desc(),
            )
            .limit(1)
        ).first()
        return self._to_domain(row) if row is not None else None

    def list_for_member(self, member_id: str, group_id: str) -> List[EligibilityAssessment]:
        rows = self.db.scalars(
            select(EligibilityAssessmentRecord)
            .where(
                EligibilityAssessmentRecord.member_id == member_id,
                EligibilityAssessmentRecord.group_id == group_id,
            )
            .order_by(EligibilityAssessmentRecord.assessed_at)
        ).all()
        return [self._to_domain(r) for r in rows]

    @staticmethod
    def _to_domain(row: EligibilityAssessmentRecord) -> EligibilityAssessment:
        return EligibilityAssessment(
            assessment_id=str(row.id),
            member_id=row.member_id,
            group_id=row.group_id,
            overall_score=row.overall_score,
            components=ScoreComponents(
                contribution_score=row.contribution_score,
                participation_score=row.participation_score,
                repayment_score=row.repayment_score,
                risk_score=row.risk_score,
            ),
            is_eligible=row.is_eligible,
            rejection_reason=RejectionReason(row.rejection_reason) if row.rejection_reason else None,
            max_loan_amount=row.max_loan_amount,
            assessed_at=ensure_utc(row.assessed_at),
            expires_at=ensure_utc(row.expires_at),
            metadata=row.score_metadata or {},
            overridden_by=row.overridden_by,
            overridden_at=_utc(row.overridden_at),
            notes=row.notes,
        )


LOAN_MUTABLE_FIELDS = (
    "status",
    "interest_rate",
    "repayment_period_months",
    "approved_by",
    "approved_at",
    "rejected_by",
    "rejected_at",
    "rejection_reason",
    "disbursed_by",
    "disburse_date",
    "repaid_at",
    "defaulted_at",
    "default_reason",
    "updated_at",
)


class LoanRepository:
    """Repository for loans with optimistic, state-guarded updates"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, loan: Loan) -> None:
        self.db.add(
            LoanRecord(
                id=uuid.UUID(loan.loan_id),
                member_id=loan.member_id,
                group_id=loan.group_id,
                amount=loan.amount,
                status=loan.status.value,
                reason=loan.reason,
                interest_rate=loan.interest_rate,
                repayment_period_months=loan.repayment_period_months,
                eligibility_score=loan.eligibility_score,
                idempotency_key=loan.idempotency_key,
                version=loan.version,
                created_at=loan.created_at,
                updated_at=loan.updated_at,
            )
        )
        self.db.flush()

    def get(self, loan_id: str) -> Optional[Loan]:
        key = _as_uuid(loan_id)
        if key is None:
            return None
        row = self.db.get(LoanRecord, key, populate_existing=True)
        return self._to_domain(row) if row is not None else None

    def find_by_idempotency_key(self, member_id: str, group_id: str, key: str) -> Optional[Loan]:
        row = self.db.scalars(
            select(LoanRecord).where(
                LoanRecord.member_id == member_id,
                LoanRecord.group_id == group_id,
                LoanRecord.idempotency_key == key,
            )
        ).first()
        return self._to_domain(row) if row is not None else None

    def find_active(self, member_id: str, group_id: str) -> Optional[Loan]:
        row = self.db.scalars(
            select(LoanRecord).where(
                LoanRecord.member_id == member_id,
                LoanRecord.group_id == group_id,
                LoanRecord.status.in_([s.value for s in ACTIVE_LOAN_STATUSES]),
            )
        ).first()
        return self._to_domain(row) if row is not None else None

    def list_for_member(self, member_id: str, group_id: Optional[str] = None) -> List[Loan]:
        query = select(LoanRecord).where(LoanRecord.member_id == member_id)
        if group_id is not None:
            query = query.where(LoanRecord.group_id == group_id)
        rows = self.db.scalars(query.order_by(LoanRecord.created_at.desc())).all()
        return [self._to_domain(r) for r in rows]

    def update(self, loan: Loan, expected: Loan) -> Loan:
        """
        Persist a transition only if the stored row still matches `expected`.

        The WHERE clause on (status, version) makes the "must be in prior
        state" guard atomic against concurrent writers.
        """
        values = {name: getattr(loan, name) for name in LOAN_MUTABLE_FIELDS}
        values["status"] = loan.status.value
        values["version"] = expected.version + 1
        result = self.db.execute(
            update(LoanRecord)
            .where(
                LoanRecord.id == uuid.UUID(loan.loan_id),
                LoanRecord.status == expected.status.value,
                LoanRecord.version == expected.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Loan {loan.loan_id} was modified concurrently or is no longer '{expected.status.value}'",
                {"loan_id": loan.loan_id, "expected_status": expected.status.value},
            )
        loan.version = expected.version + 1
        return loan

    @staticmethod
    def _to_domain(row: LoanRecord) -> Loan:
        return Loan(
            loan_id=str(row.id),
            member_id=row.member_id,
            group_id=row.group_id,
            amount=row.amount,
            status=LoanStatus(row.status),
            reason=row.reason,
            interest_rate=Decimal(row.interest_rate),
            repayment_period_months=row.repayment_period_months,
            eligibility_score=row.eligibility_score,
            idempotency_key=row.idempotency_key,
            approved_by=row.approved_by,
            approved_at=_utc(row.approved_at),
            rejected_by=row.rejected_by,
            rejected_at=_utc(row.rejected_at),
            rejection_reason=row.rejection_reason,
            disbursed_by=row.disbursed_by,
            disburse_date=_utc(row.disburse_date),
            repaid_at=_utc(row.repaid_at),
            defaulted_at=_utc(row.defaulted_at),
            default_reason=row.default_reason,
            created_at=_utc(row.created_at),
            updated_at=_utc(row.updated_at),
            version=row.version,
        )


class ScheduleRepository:
    """Repository for repayment schedules, installments and payments"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, schedule: RepaymentSchedule) -> None:
        config = schedule.penalty_config
        record = RepaymentScheduleRecord(
            id=uuid.UUID(schedule.schedule_id),
            loan_id=uuid.UUID(schedule.loan_id),
            total_principal=schedule.total_principal,
            total_interest=schedule.total_interest,
            total_amount=schedule.total_amount,
            total_paid=schedule.total_paid,
            total_penalties=schedule.total_penalties,
            outstanding_amount=schedule.outstanding_amount,
            status=schedule.status.value,
            late_fee_percent=config.late_fee_percent,
            late_fee_fixed=config.late_fee_fixed,
            grace_days=config.grace_days,
            max_penalty_percent=config.max_penalty_percent,
            version=schedule.version,
            created_at=schedule.created_at,
        )
        for inst in schedule.installments:
            record.installments.append(
                InstallmentRecord(
                    number=inst.number,
                    due_date=inst.due_date,
                    principal=inst.principal,
                    interest=inst.interest,
                    total_amount=inst.total_amount,
                    paid_amount=inst.paid_amount,
                    penalties=inst.penalties,
                    status=inst.status.value,
                )
            )
        self.db.add(record)
        self.db.flush()

    def get_by_loan(self, loan_id: str) -> Optional[RepaymentSchedule]:
        record = self._load(loan_id)
        return self._to_domain(record) if record is not None else None

    def save(self, schedule: RepaymentSchedule, expected_version: int) -> RepaymentSchedule:
        """Write back a mutated schedule, guarded by its version token"""
        result = self.db.execute(
            update(RepaymentScheduleRecord)
            .where(
                RepaymentScheduleRecord.id == uuid.UUID(schedule.schedule_id),
                RepaymentScheduleRecord.version == expected_version,
            )
            .values(
                total_paid=schedule.total_paid,
                total_penalties=schedule.total_penalties,
                outstanding_amount=schedule.outstanding_amount,
                status=schedule.status.value,
                completed_at=schedule.completed_at,
                defaulted_at=schedule.defaulted_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Schedule {schedule.schedule_id} was modified concurrently",
                {"schedule_id": schedule.schedule_id},
            )

        record = self._load(schedule.loan_id)
        rows = {row.number: row for row in record.installments}
        for inst in schedule.installments:
            row = rows[inst.number]
            row.paid_amount = inst.paid_amount
            row.penalties = inst.penalties
            row.status = inst.status.value
            row.paid_at = inst.paid_at
            for payment in inst.payments[len(row.payments):]:
                row.payments.append(
                    InstallmentPaymentRecord(
                        amount=payment.amount,
                        paid_at=payment.paid_at,
                        method=payment.method,
                        reference=payment.reference,
                    )
                )
        self.db.flush()
        schedule.version = expected_version + 1
        return schedule

    def list_active_loan_ids(self) -> List[str]:
        rows = self.db.scalars(
            select(RepaymentScheduleRecord.loan_id).where(
                RepaymentScheduleRecord.status == ScheduleStatus.ACTIVE.value
            )
        ).all()
        return [str(loan_id) for loan_id in rows]

    def _load(self, loan_id: str) -> Optional[RepaymentScheduleRecord]:
        key = _as_uuid(loan_id)
        if key is None:
            return None
        return self.db.scalars(
            select(RepaymentScheduleRecord)
            .where(RepaymentScheduleRecord.loan_id == key)
            .options(selectinload(RepaymentScheduleRecord.installments).selectinload(InstallmentRecord.payments))
            .execution_options(populate_existing=True)
        ).first()

    @staticmethod
    def _to_domain(record: RepaymentScheduleRecord) -> RepaymentSchedule:
        installments = [
            Installment(
                number=row.number,
                due_date=row.due_date,
                principal=row.principal,
                interest=row.interest,
                total_amount=row.total_amount,
                paid_amount=row.paid_amount,
                penalties=row.penalties,
                status=InstallmentStatus(row.status),
                paid_at=_utc(row.paid_at),
                payments=[
                    Payment(
                        installment_number=row.number,
                        amount=p.amount,
                        paid_at=ensure_utc(p.paid_at),
                        method=p.method,
                        reference=p.reference,
                    )
                    for p in row.payments
                ],
            )
            for row in record.installments
        ]
        return RepaymentSchedule(
            schedule_id=str(record.id),
            loan_id=str(record.loan_id),
            installments=installments,
            total_principal=record.total_principal,
            total_interest=record.total_interest,
            total_amount=record.total_amount,
            penalty_config=PenaltyConfig(
                late_fee_percent=Decimal(record.late_fee_percent),
                late_fee_fixed=record.late_fee_fixed,
                grace_days=record.grace_days,
                max_penalty_percent=Decimal(record.max_penalty_percent),
            ),
            total_paid=record.total_paid,
            total_penalties=record.total_penalties,
            outstanding_amount=record.outstanding_amount,
            status=ScheduleStatus(record.status),
            created_at=_utc(record.created_at),
            completed_at=_utc(record.completed_at),
            defaulted_at=_utc(record.defaulted_at),
            version=record.version,
        )


class AuditRepository:
    """Append-only store of audit entries"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, entry: AuditEntry) -> None:
        self.db.add(
            AuditEntryRecord(
                action=entry.action.value,
                loan_id=entry.loan_id,
                member_id=entry.member_id,
                group_id=entry.group_id,
                actor_id=entry.actor_id,
                actor_role=entry.actor_role.value,
                before=entry.before,
                after=entry.after,
                amount=entry.amount,
                status=entry.status.value,
                description=entry.description,
                entry_metadata=entry.metadata or None,
                error_message=entry.error_message,
                error_code=entry.error_code,
                created_at=entry.created_at,
            )
        )
        self.db.flush()

    def query(
        self,
        loan_id: Optional[str] = None,
        member_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[AuditEntry]:
        """Entries matching every given filter, oldest first"""
        query = select(AuditEntryRecord)
        if loan_id is not None:
            query = query.where(AuditEntryRecord.loan_id == loan_id)
        if member_id is not None:
            query = query.where(AuditEntryRecord.member_id == member_id)
        if actor_id is not None:
            query = query.where(AuditEntryRecord.actor_id == actor_id)
        if since is not None:
            query = query.where(AuditEntryRecord.created_at >= ensure_utc(since))
        if until is not None:
            query = query.where(AuditEntryRecord.created_at < ensure_utc(until))
        rows = self.db.scalars(query.order_by(AuditEntryRecord.id).limit(limit)).all()
        return [
            AuditEntry(
                action=AuditAction(r.action),
                member_id=r.member_id,
                actor_id=r.actor_id,
                actor_role=ActorRole(r.actor_role),
                group_id=r.group_id,
                loan_id=r.loan_id,
                before=r.before,
                after=r.after,
                amount=r.amount,
                status=AuditStatus(r.status),
                description=r.description,
                metadata=r.entry_metadata or {},
                error_message=r.error_message,
                error_code=r.error_code,
                entry_id=r.id,
                created_at=_utc(r.created_at),
            )
            for r in rows
        ]
