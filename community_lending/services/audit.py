"""Audit trail: in-transaction writes plus a best-effort side channel"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, sessionmaker

from community_lending.domain.models import AuditEntry
from community_lending.infrastructure.database.repositories import AuditRepository
from community_lending.infrastructure.observability.metrics import audit_failure_counter

logger = logging.getLogger(__name__)


class AuditTrail:
    """
    Writes audit entries as part of the caller's unit of work.

    Each insert runs inside a SAVEPOINT: if the audit row cannot be
    written it is rolled back alone, logged and dropped, and the business
    transition still commits. If the surrounding transaction rolls back,
    the entry goes with it.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repository = AuditRepository(db)

    def record(self, entry: AuditEntry) -> bool:
        try:
            with self.db.begin_nested():
                self.repository.add(entry)
            return True
        except Exception:
            audit_failure_counter.inc()
            logger.exception(
                "Audit write failed",
                extra={"action": entry.action.value, "loan_id": entry.loan_id, "member_id": entry.member_id},
            )
            return False

    def query(
        self,
        loan_id: Optional[str] = None,
        member_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[AuditEntry]:
        return self.repository.query(
            loan_id=loan_id,
            member_id=member_id,
            actor_id=actor_id,
            since=since,
            until=until,
            limit=limit,
        )


class BestEffortAuditWriter:
    """
    Fire-and-forget audit channel with its own session.

    Used for entries that must outlive a rolled-back transaction (failed
    attempts). Never raises into the caller.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def write(self, entry: AuditEntry) -> bool:
        try:
            with self.session_factory() as db:
                AuditRepository(db).add(entry)
                db.commit()
            return True
        except Exception:
            audit_failure_counter.inc()
            logger.exception(
                "Best-effort audit write failed",
                extra={"action": entry.action.value, "loan_id": entry.loan_id, "member_id": entry.member_id},
            )
            return False
