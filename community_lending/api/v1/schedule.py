"""GET /v1/loans/{loan_id}/schedule - Fetch repayment schedule with summary"""

from fastapi import APIRouter, Depends

from community_lending.api.dependencies import get_loan_service
from community_lending.api.v1.schemas import ScheduleResponse
from community_lending.services.loans import LoanService

router = APIRouter()


@router.get("/loans/{loan_id}/schedule", response_model=ScheduleResponse)
def get_schedule(loan_id: str, service: LoanService = Depends(get_loan_service)):
    """
    Retrieve a disbursed loan's installment plan.

    Returns:
        Installments with per-installment status, plus percent paid and
        next due date
    """
    schedule, summary = service.get_schedule(loan_id)
    return ScheduleResponse.from_domain(schedule, summary)
