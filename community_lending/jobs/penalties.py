"""Periodic late-penalty recalculation over every active repayment schedule"""

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from community_lending.config import settings
from community_lending.domain.exceptions import DomainException
from community_lending.infrastructure.database.repositories import ScheduleRepository
from community_lending.infrastructure.database.session import SessionLocal
from community_lending.infrastructure.observability.logging import setup_logging
from community_lending.services.audit import BestEffortAuditWriter
from community_lending.services.loans import LoanService
from community_lending.utils.date_utils import utc_now

logger = logging.getLogger(__name__)


def recalculate_all_penalties(session_factory: sessionmaker, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Recalculate penalties for each active schedule in its own transaction.

    A loan that fails (for example a concurrent payment bumped the schedule
    version) is skipped and picked up again on the next run.

    Returns:
        Penalty minor units added, keyed by loan id
    """
    as_of = now or utc_now()
    with session_factory() as db:
        loan_ids = ScheduleRepository(db).list_active_loan_ids()

    side_channel = BestEffortAuditWriter(session_factory)
    results: Dict[str, int] = {}
    for loan_id in loan_ids:
        with session_factory() as db:
            service = LoanService(db, side_channel, clock=lambda: as_of)
            try:
                _, added = service.recalculate_penalties(loan_id)
            except DomainException as e:
                logger.warning(
                    f"Skipping penalty recalculation: {e.message}",
                    extra={"loan_id": loan_id, "error_code": e.code},
                )
                continue
        results[loan_id] = added

    logger.info(
        "Penalty recalculation finished",
        extra={
            "schedules": len(loan_ids),
            "updated": sum(1 for added in results.values() if added),
            "penalties_added": sum(results.values()),
        },
    )
    return results


def main() -> None:
    setup_logging(settings.log_level)
    recalculate_all_penalties(SessionLocal)


if __name__ == "__main__":
    main()
