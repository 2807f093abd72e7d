"""SQLAlchemy ORM models for the lending core and its read-only collaborators"""

import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

ACTIVE_LOAN_STATUS_SQL = text("status IN ('pending', 'approved', 'disbursed')")


class MemberRecord(Base):
    """Member owned by the user-management collaborator (read-only here)"""

    __tablename__ = "members"

    id = Column(Text, primary_key=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_suspended = Column(Boolean, nullable=False, default=False)
    role = Column(Text, nullable=False, default="user")


class GroupMembershipRecord(Base):
    """Membership of a member in a savings group (read-only here)"""

    __tablename__ = "group_memberships"

    member_id = Column(Text, ForeignKey("members.id"), primary_key=True)
    group_id = Column(Text, primary_key=True, index=True)
    role = Column(Text, nullable=False, default="member")
    joined_at = Column(DateTime(timezone=True), nullable=True)


class ContributionRecord(Base):
    """Contribution to a group's pool (read-only here)"""

    __tablename__ = "contributions"
    __table_args__ = (Index("ix_contributions_member_group", "member_id", "group_id", "contributed_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Text, nullable=False)
    group_id = Column(Text, nullable=False)
    amount = Column(BigInteger, nullable=False)
    contributed_at = Column(DateTime(timezone=True), nullable=False)


class EligibilityAssessmentRecord(Base):
    """Insert-only eligibility verdicts; the newest unexpired row is the active one"""

    __tablename__ = "eligibility_assessments"
    __table_args__ = (Index("ix_assessment_lookup", "member_id", "group_id", "expires_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id = Column(Text, nullable=False)
    group_id = Column(Text, nullable=False)
    overall_score = Column(Float, nullable=False)
    contribution_score = Column(Float, nullable=False)
    participation_score = Column(Float, nullable=False)
    repayment_score = Column(Float, nullable=False)
    risk_score = Column(Float, nullable=False)
    is_eligible = Column(Boolean, nullable=False)
    rejection_reason = Column(Text, nullable=True)
    max_loan_amount = Column(BigInteger, nullable=False, default=0)
    score_metadata = Column(JSON, nullable=True)
    assessed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    overridden_by = Column(Text, nullable=True)
    overridden_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)


class LoanRecord(Base):
    """One borrowing instance; `version` is the optimistic concurrency token"""

    __tablename__ = "loans"
    __table_args__ = (
        UniqueConstraint("member_id", "group_id", "idempotency_key", name="uq_loan_idempotency_key"),
        Index(
            "uq_loan_one_active_per_group",
            "member_id",
            "group_id",
            unique=True,
            postgresql_where=ACTIVE_LOAN_STATUS_SQL,
            sqlite_where=ACTIVE_LOAN_STATUS_SQL,
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id = Column(Text, nullable=False, index=True)
    group_id = Column(Text, nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default="pending", index=True)
    reason = Column(Text, nullable=True)
    interest_rate = Column(Numeric(5, 2), nullable=False, default=0)
    repayment_period_months = Column(Integer, nullable=False, default=6)
    eligibility_score = Column(Float, nullable=False, default=0)
    idempotency_key = Column(Text, nullable=True)
    approved_by = Column(Text, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(Text, nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    disbursed_by = Column(Text, nullable=True)
    disburse_date = Column(DateTime(timezone=True), nullable=True)
    repaid_at = Column(DateTime(timezone=True), nullable=True)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)
    default_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    schedule = relationship("RepaymentScheduleRecord", back_populates="loan", uselist=False)


class RepaymentScheduleRecord(Base):
    """Installment plan created exactly once per disbursed loan"""

    __tablename__ = "repayment_schedules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    loan_id = Column(Uuid, ForeignKey("loans.id"), nullable=False, unique=True)
    total_principal = Column(BigInteger, nullable=False)
    total_interest = Column(BigInteger, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    total_paid = Column(BigInteger, nullable=False, default=0)
    total_penalties = Column(BigInteger, nullable=False, default=0)
    outstanding_amount = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default="active", index=True)
    late_fee_percent = Column(Numeric(5, 2), nullable=False)
    late_fee_fixed = Column(BigInteger, nullable=False, default=0)
    grace_days = Column(Integer, nullable=False)
    max_penalty_percent = Column(Numeric(5, 2), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    loan = relationship("LoanRecord", back_populates="schedule")
    installments = relationship(
        "InstallmentRecord",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="InstallmentRecord.number",
    )


class InstallmentRecord(Base):
    """Single installment within a repayment schedule"""

    __tablename__ = "installments"
    __table_args__ = (UniqueConstraint("schedule_id", "number", name="uq_installment_number"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    schedule_id = Column(Uuid, ForeignKey("repayment_schedules.id", ondelete="CASCADE"), nullable=False)
    number = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    principal = Column(BigInteger, nullable=False)
    interest = Column(BigInteger, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    paid_amount = Column(BigInteger, nullable=False, default=0)
    penalties = Column(BigInteger, nullable=False, default=0)
    status = Column(Text, nullable=False, default="pending")
    paid_at = Column(DateTime(timezone=True), nullable=True)

    schedule = relationship("RepaymentScheduleRecord", back_populates="installments")
    payments = relationship(
        "InstallmentPaymentRecord",
        back_populates="installment",
        cascade="all, delete-orphan",
        order_by="InstallmentPaymentRecord.id",
    )


class InstallmentPaymentRecord(Base):
    """Money applied to an installment"""

    __tablename__ = "installment_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    installment_id = Column(Uuid, ForeignKey("installments.id", ondelete="CASCADE"), nullable=False)
    amount = Column(BigInteger, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=False)
    method = Column(Text, nullable=False)
    reference = Column(Text, nullable=True, index=True)

    installment = relationship("InstallmentRecord", back_populates="payments")


class AuditEntryRecord(Base):
    """Append-only audit log; the autoincrement id gives creation order"""

    __tablename__ = "loan_audit_entries"
    __table_args__ = (
        Index("ix_audit_loan", "loan_id", "id"),
        Index("ix_audit_member", "member_id", "id"),
        Index("ix_audit_actor", "actor_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(Text, nullable=False, index=True)
    loan_id = Column(Text, nullable=True)
    member_id = Column(Text, nullable=False)
    group_id = Column(Text, nullable=True)
    actor_id = Column(Text, nullable=False)
    actor_role = Column(Text, nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    amount = Column(BigInteger, nullable=True)
    status = Column(Text, nullable=False, default="success")
    description = Column(Text, nullable=True)
    entry_metadata = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
