"""Read-only aggregation of a member's contribution and loan history"""

from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from community_lending.domain.exceptions import NotFoundError
from community_lending.domain.models import LoanStatus, MemberLedger, PriorLoan
from community_lending.infrastructure.database.models import LoanRecord, RepaymentScheduleRecord
from community_lending.infrastructure.database.repositories import ContributionRepository, MemberRepository


class LedgerReader:
    """Builds the MemberLedger snapshot the eligibility scorer works from"""

    def __init__(self, db: Session):
        self.db = db
        self.members = MemberRepository(db)
        self.contributions = ContributionRepository(db)

    def read(self, member_id: str, group_id: str) -> MemberLedger:
        """
        Collect everything scoring needs for one member/group pair.

        Raises:
            NotFoundError: If the member does not exist
        """
        member = self.members.get_member(member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found", {"member_id": member_id})

        return MemberLedger(
            member=member,
            group_id=group_id,
            membership=self.members.get_membership(member_id, group_id),
            contributions=self.contributions.list_for_member(member_id, group_id),
            loans=self._prior_loans(member_id, group_id),
        )

    def _prior_loans(self, member_id: str, group_id: str) -> List[PriorLoan]:
        rows = self.db.scalars(
            select(LoanRecord)
            .where(LoanRecord.member_id == member_id, LoanRecord.group_id == group_id)
            .options(
                selectinload(LoanRecord.schedule).selectinload(RepaymentScheduleRecord.installments)
            )
        ).all()

        prior = []
        for row in rows:
            status = LoanStatus(row.status)
            schedule = row.schedule
            installments = schedule.installments if schedule is not None else []
            on_time = sum(
                1
                for inst in installments
                if inst.status == "paid" and inst.paid_at is not None and inst.paid_at.date() <= inst.due_date
            )

            if status == LoanStatus.APPROVED:
                outstanding = row.amount
            elif status == LoanStatus.DISBURSED and schedule is not None:
                outstanding = schedule.outstanding_amount
            else:
                outstanding = 0

            prior.append(
                PriorLoan(
                    loan_id=str(row.id),
                    status=status,
                    amount=row.amount,
                    outstanding_amount=outstanding,
                    installments_total=len(installments),
                    installments_on_time=on_time,
                )
            )
        return prior
