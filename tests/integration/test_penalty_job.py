"""Integration tests for the scheduled penalty recalculation job"""

from datetime import datetime, timezone

from community_lending.domain.models import AuditAction
from community_lending.infrastructure.database.repositories import AuditRepository, ScheduleRepository
from community_lending.jobs.penalties import recalculate_all_penalties

LATE = datetime(2026, 7, 25, 12, 0, tzinfo=timezone.utc)


def test_job_applies_penalties_to_every_active_schedule(disbursed_loan, session_factory, db):
    alice = disbursed_loan("alice")
    bob = disbursed_loan("bob")
    db.close()

    results = recalculate_all_penalties(session_factory, now=LATE)

    assert results == {alice.loan_id: 40, bob.loan_id: 40}
    with session_factory() as check:
        assert ScheduleRepository(check).get_by_loan(alice.loan_id).total_penalties == 40
        applied = [e for e in AuditRepository(check).query(loan_id=bob.loan_id) if e.action == AuditAction.PENALTY_APPLIED]
        assert len(applied) == 1
        assert applied[0].actor_id == "system"


def test_job_is_idempotent_for_the_same_instant(disbursed_loan, session_factory, db):
    loan = disbursed_loan()
    db.close()

    recalculate_all_penalties(session_factory, now=LATE)
    rerun = recalculate_all_penalties(session_factory, now=LATE)

    assert rerun == {loan.loan_id: 0}


def test_job_skips_completed_schedules(disbursed_loan, loan_service, session_factory, db):
    paid = disbursed_loan("alice")
    open_loan = disbursed_loan("bob")
    loan_service.record_payment(paid.loan_id, 12000, "cash", "alice")
    db.close()

    results = recalculate_all_penalties(session_factory, now=LATE)

    assert results == {open_loan.loan_id: 40}


def test_job_before_any_due_date_adds_nothing(disbursed_loan, session_factory, db):
    loan = disbursed_loan()
    db.close()

    assert recalculate_all_penalties(session_factory, now=datetime(2026, 7, 1, tzinfo=timezone.utc)) == {
        loan.loan_id: 0
    }
