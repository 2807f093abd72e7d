"""Integration tests for eligibility caching, override and access checks"""

from datetime import timedelta

import pytest

from community_lending.domain.exceptions import AuthorizationError, InternalError, NotFoundError
from community_lending.domain.models import AuditAction, AuditStatus, RejectionReason
from community_lending.infrastructure.database.repositories import AssessmentRepository, AuditRepository
from community_lending.services.eligibility import EligibilityService

GROUP = "group-1"


@pytest.fixture
def service(db, side_channel, clock):
    return EligibilityService(db, side_channel, clock=clock)


def test_first_check_scores_and_second_is_cached(seed, service, db):
    seed.eligible_member("alice")

    first, first_cached = service.check("alice", GROUP, "alice")
    second, second_cached = service.check("alice", GROUP, "alice")

    assert first_cached is False
    assert second_cached is True
    assert second.assessment_id == first.assessment_id
    assert first.is_eligible is True
    assert first.max_loan_amount == 30000
    assert len(AssessmentRepository(db).list_for_member("alice", GROUP)) == 1


def test_assessment_is_rescored_after_expiry(seed, service, clock):
    seed.eligible_member("alice")
    first, _ = service.check("alice", GROUP, "alice")

    clock.advance(days=31)
    refreshed, cached = service.check("alice", GROUP, "alice")

    assert cached is False
    assert refreshed.assessment_id != first.assessment_id
    assert refreshed.assessed_at == first.assessed_at + timedelta(days=31)


def test_override_supersedes_cached_assessment(seed, admin, service, clock, db):
    seed.member("bob")
    seed.membership("bob")
    verdict, _ = service.check("bob", GROUP, "bob")
    assert verdict.rejection_reason == RejectionReason.INSUFFICIENT_GROUP_MEMBERSHIP

    clock.advance(minutes=1)
    overridden = service.override("bob", GROUP, False, admin, notes="pending KYC review")
    current, cached = service.check("bob", GROUP, "bob")

    assert cached is True
    assert current.assessment_id == overridden.assessment_id
    assert current.overridden_by == admin
    assert current.notes == "pending KYC review"

    entries = AuditRepository(db).query(member_id="bob")
    assert [e.action for e in entries] == [
        AuditAction.ELIGIBILITY_ASSESSED,
        AuditAction.ELIGIBILITY_OVERRIDDEN,
    ]
    assert entries[-1].actor_id == admin


def test_override_can_grant_eligibility(seed, service, clock):
    seed.member("bob")
    seed.membership("bob", role="member")
    seed.contributions("bob", [500, 3500], start=clock() - timedelta(days=90), interval_days=90)
    treasurer = seed.group_admin()

    overridden = service.override("bob", GROUP, True, treasurer, notes="vouched by the group")

    assert overridden.is_eligible is True
    assert overridden.max_loan_amount == 10000


def test_override_requires_privilege(seed, service):
    seed.eligible_member("alice")
    with pytest.raises(AuthorizationError):
        service.override("alice", GROUP, True, "alice")


def test_member_cannot_check_someone_else(seed, service):
    seed.eligible_member("alice")
    seed.member("mallory")
    seed.membership("mallory")

    with pytest.raises(AuthorizationError):
        service.check("alice", GROUP, "mallory")


def test_admin_can_check_any_member(seed, admin, service):
    seed.eligible_member("alice")
    assessment, _ = service.check("alice", GROUP, admin)
    assert assessment.is_eligible is True


def test_unknown_actor_is_rejected(seed, service):
    seed.eligible_member("alice")
    with pytest.raises(AuthorizationError):
        service.check("alice", GROUP, "nobody")


def test_unknown_member_leaves_failed_audit(admin, service, db):
    with pytest.raises(NotFoundError):
        service.check("ghost", GROUP, admin)

    entries = AuditRepository(db).query(member_id="ghost")
    assert len(entries) == 1
    assert entries[0].action == AuditAction.ELIGIBILITY_ASSESSED
    assert entries[0].status == AuditStatus.FAILED
    assert entries[0].error_code == "not_found"


def test_refused_check_leaves_failed_audit(seed, service, db):
    seed.eligible_member("alice")
    seed.member("mallory")
    seed.membership("mallory")

    with pytest.raises(AuthorizationError):
        service.check("alice", GROUP, "mallory")

    entries = AuditRepository(db).query(member_id="alice")
    assert [(e.action, e.status) for e in entries] == [(AuditAction.ELIGIBILITY_ASSESSED, AuditStatus.FAILED)]
    assert entries[0].actor_id == "mallory"
    assert entries[0].error_code == "forbidden"
    assert AssessmentRepository(db).list_for_member("alice", GROUP) == []


def test_refused_override_leaves_failed_audit(seed, service, db):
    seed.eligible_member("alice")

    with pytest.raises(AuthorizationError):
        service.override("alice", GROUP, True, "alice")

    entries = AuditRepository(db).query(member_id="alice")
    assert [(e.action, e.status) for e in entries] == [(AuditAction.ELIGIBILITY_OVERRIDDEN, AuditStatus.FAILED)]
    assert entries[0].error_code == "forbidden"


def test_unknown_actor_leaves_failed_audit(seed, service, db):
    seed.eligible_member("alice")

    with pytest.raises(AuthorizationError):
        service.check("alice", GROUP, "nobody")

    entries = AuditRepository(db).query(member_id="alice")
    assert len(entries) == 1
    assert entries[0].status == AuditStatus.FAILED
    assert entries[0].actor_id == "nobody"
    assert entries[0].error_code == "forbidden"


def test_unexpected_scoring_error_is_internal(seed, service, db, monkeypatch):
    seed.eligible_member("alice")

    def explode(*args, **kwargs):
        raise RuntimeError("scoring blew up")

    monkeypatch.setattr("community_lending.services.eligibility.assess_eligibility", explode)

    with pytest.raises(InternalError):
        service.check("alice", GROUP, "alice")

    entries = AuditRepository(db).query(member_id="alice")
    assert [(e.action, e.status) for e in entries] == [(AuditAction.ELIGIBILITY_ASSESSED, AuditStatus.FAILED)]
    assert entries[0].error_code == "internal_error"
    assert AssessmentRepository(db).list_for_member("alice", GROUP) == []
