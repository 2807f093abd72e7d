"""Eligibility orchestration: scorer persistence, cache lookup and admin override"""

import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from community_lending.config import settings
from community_lending.domain.access import require_privileged, require_self_or_privileged
from community_lending.domain.exceptions import AuthorizationError, DomainException, InternalError
from community_lending.domain.models import (
    ActorRole,
    AuditAction,
    AuditEntry,
    AuditStatus,
    EligibilityAssessment,
    GroupMembership,
    Member,
    snapshot,
)
from community_lending.domain.scoring import ScoringConfig, assess_eligibility
from community_lending.infrastructure.database.repositories import AssessmentRepository, MemberRepository
from community_lending.infrastructure.ledger_reader import LedgerReader
from community_lending.infrastructure.observability.metrics import eligibility_cache_counter, record_eligibility
from community_lending.services.audit import AuditTrail, BestEffortAuditWriter
from community_lending.utils.date_utils import utc_now

logger = logging.getLogger(__name__)


def _verdict(assessment: EligibilityAssessment) -> dict:
    return {
        "assessment_id": assessment.assessment_id,
        "is_eligible": assessment.is_eligible,
        "overall_score": assessment.overall_score,
        "rejection_reason": assessment.rejection_reason.value if assessment.rejection_reason else None,
        "max_loan_amount": assessment.max_loan_amount,
        "components": snapshot(assessment.components),
        "expires_at": assessment.expires_at.isoformat(),
    }


class EligibilityScorer:
    """
    Scores a member's ledger and persists the verdict.

    Every call writes a fresh assessment plus an audit entry. Failures
    roll back and leave a `failed` entry through the side channel.
    """

    def __init__(
        self,
        db: Session,
        side_channel: BestEffortAuditWriter,
        config: Optional[ScoringConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.side_channel = side_channel
        self.config = config or ScoringConfig.from_settings(settings)
        self.clock = clock
        self.ledger = LedgerReader(db)
        self.assessments = AssessmentRepository(db)
        self.audit = AuditTrail(db)

    def assess(
        self,
        member_id: str,
        group_id: str,
        actor_id: str,
        actor_role: ActorRole = ActorRole.USER,
        override: Optional[bool] = None,
        notes: Optional[str] = None,
    ) -> EligibilityAssessment:
        action = AuditAction.ELIGIBILITY_ASSESSED if override is None else AuditAction.ELIGIBILITY_OVERRIDDEN
        start_time = time.time()
        now = self.clock()

        try:
            ledger = self.ledger.read(member_id, group_id)
            assessment = assess_eligibility(
                ledger,
                now,
                self.config,
                assessment_id=str(uuid.uuid4()),
                override=override,
                overridden_by=actor_id if override is not None else None,
                notes=notes,
            )
            self.assessments.add(assessment)
            self.audit.record(
                AuditEntry(
                    action=action,
                    member_id=member_id,
                    group_id=group_id,
                    actor_id=actor_id,
                    actor_role=actor_role,
                    after=_verdict(assessment),
                    description=notes,
                    metadata=dict(assessment.metadata),
                    created_at=now,
                )
            )
            self.db.commit()

        except DomainException as e:
            self.db.rollback()
            self.record_failure(action, member_id, group_id, actor_id, actor_role, e, now)
            logger.warning(
                f"Eligibility assessment failed: {e.message}",
                extra={"member_id": member_id, "group_id": group_id, "error_code": e.code},
            )
            raise

        except SQLAlchemyError as e:
            self.db.rollback()
            error = InternalError("Failed to persist eligibility assessment")
            self.record_failure(action, member_id, group_id, actor_id, actor_role, error, now)
            logger.exception("Eligibility assessment storage error", extra={"member_id": member_id})
            raise error from e

        except Exception as e:
            self.db.rollback()
            error = InternalError("Unexpected failure during eligibility assessment")
            self.record_failure(action, member_id, group_id, actor_id, actor_role, error, now)
            logger.exception("Unexpected eligibility assessment error", extra={"member_id": member_id})
            raise error from e

        record_eligibility(assessment.is_eligible, assessment.max_loan_amount)
        logger.info(
            "Eligibility assessed",
            extra={
                "member_id": member_id,
                "group_id": group_id,
                "is_eligible": assessment.is_eligible,
                "overall_score": assessment.overall_score,
                "rejection_reason": assessment.rejection_reason.value if assessment.rejection_reason else None,
                "overridden": override is not None,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        return assessment

    def record_failure(self, action, member_id, group_id, actor_id, actor_role, error, now) -> None:
        self.side_channel.write(
            AuditEntry(
                action=action,
                member_id=member_id,
                group_id=group_id,
                actor_id=actor_id,
                actor_role=actor_role,
                status=AuditStatus.FAILED,
                error_message=error.message,
                error_code=error.code,
                metadata=dict(error.details),
                created_at=now,
            )
        )


class EligibilityCache:
    """Serves the newest unexpired assessment, rescoring when none is active"""

    def __init__(self, db: Session, scorer: EligibilityScorer, clock: Callable[[], datetime] = utc_now):
        self.assessments = AssessmentRepository(db)
        self.scorer = scorer
        self.clock = clock

    def get_eligibility(
        self,
        member_id: str,
        group_id: str,
        actor_id: str,
        actor_role: ActorRole = ActorRole.USER,
    ) -> Tuple[EligibilityAssessment, bool]:
        """Return (assessment, served_from_cache)"""
        cached = self.assessments.find_active(member_id, group_id, self.clock())
        if cached is not None:
            eligibility_cache_counter.labels(result="hit").inc()
            return cached, True

        eligibility_cache_counter.labels(result="miss").inc()
        return self.scorer.assess(member_id, group_id, actor_id, actor_role), False


class EligibilityService:
    """Access-checked entry points used by the HTTP layer"""

    def __init__(
        self,
        db: Session,
        side_channel: BestEffortAuditWriter,
        config: Optional[ScoringConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.members = MemberRepository(db)
        self.scorer = EligibilityScorer(db, side_channel, config, clock)
        self.cache = EligibilityCache(db, self.scorer, clock)

    def check(self, member_id: str, group_id: str, actor_id: str) -> Tuple[EligibilityAssessment, bool]:
        role = self._authorize(
            AuditAction.ELIGIBILITY_ASSESSED,
            member_id,
            group_id,
            actor_id,
            lambda actor, membership: require_self_or_privileged(actor, membership, member_id, "check eligibility"),
        )
        return self.cache.get_eligibility(member_id, group_id, actor_id, role)

    def override(
        self,
        member_id: str,
        group_id: str,
        is_eligible: bool,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> EligibilityAssessment:
        """Force a verdict; the fresh assessment supersedes any cached one"""
        role = self._authorize(
            AuditAction.ELIGIBILITY_OVERRIDDEN,
            member_id,
            group_id,
            actor_id,
            lambda actor, membership: require_privileged(actor, membership, "override eligibility"),
        )
        return self.scorer.assess(member_id, group_id, actor_id, role, override=is_eligible, notes=notes)

    def _authorize(
        self,
        action: AuditAction,
        member_id: str,
        group_id: str,
        actor_id: str,
        check: Callable[[Member, Optional[GroupMembership]], ActorRole],
    ) -> ActorRole:
        """Resolve the actor's role; a refusal is audited as a failed attempt"""
        try:
            actor = self.members.get_member(actor_id)
            if actor is None:
                raise AuthorizationError(f"Unknown actor {actor_id}", {"actor_id": actor_id})
            return check(actor, self.members.get_membership(actor_id, group_id))
        except DomainException as e:
            self.db.rollback()
            self.scorer.record_failure(action, member_id, group_id, actor_id, ActorRole.USER, e, self.scorer.clock())
            logger.warning(
                f"Eligibility access refused: {e.message}",
                extra={"member_id": member_id, "actor_id": actor_id, "error_code": e.code},
            )
            raise
