"""Idempotency guard for retried loan applications and payments"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from community_lending.domain.models import Loan, Payment, RepaymentSchedule
from community_lending.domain.schedule import find_payments_by_reference
from community_lending.infrastructure.database.repositories import LoanRepository
from community_lending.infrastructure.observability.metrics import duplicate_request_counter

logger = logging.getLogger(__name__)


@dataclass
class ApplicationResult:
    """Loan returned from an application, flagged when it is a replay"""

    loan: Loan
    duplicate: bool = False


class IdempotencyGuard:
    """Matches caller-supplied keys against earlier applications and payments"""

    def __init__(self, loans: LoanRepository):
        self.loans = loans

    def find_application(self, member_id: str, group_id: str, key: Optional[str]) -> Optional[ApplicationResult]:
        if not key:
            return None
        existing = self.loans.find_by_idempotency_key(member_id, group_id, key)
        if existing is None:
            return None
        duplicate_request_counter.labels(operation="apply").inc()
        logger.info(
            "Duplicate loan application",
            extra={"loan_id": existing.loan_id, "member_id": member_id, "idempotency_key": key},
        )
        return ApplicationResult(loan=existing, duplicate=True)

    def find_payment(self, schedule: RepaymentSchedule, reference: Optional[str]) -> List[Payment]:
        if not reference:
            return []
        existing = find_payments_by_reference(schedule, reference)
        if existing:
            duplicate_request_counter.labels(operation="payment").inc()
            logger.info(
                "Duplicate payment reference",
                extra={"loan_id": schedule.loan_id, "reference": reference},
            )
        return existing
