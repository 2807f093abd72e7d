"""Loan lifecycle endpoints - apply, approve, reject, disburse, repay, default, penalties"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from community_lending.api.dependencies import get_loan_service
from community_lending.api.v1.schemas import (
    ActorRequest,
    ApproveRequest,
    DisbursementResponse,
    ForgivePenaltyRequest,
    LoanApplicationRequest,
    LoanListResponse,
    LoanResponse,
    PaymentRequest,
    PaymentResponse,
    PaymentSchema,
    PenaltyResponse,
    ReasonRequest,
    ScheduleResponse,
)
from community_lending.domain.schedule import payment_summary
from community_lending.services.loans import LoanService

router = APIRouter()


@router.post("/loans", response_model=LoanResponse, status_code=201)
def apply_for_loan(
    request_body: LoanApplicationRequest,
    response: Response,
    service: LoanService = Depends(get_loan_service),
):
    """
    Apply for a loan.

    Flow:
    1. Return the earlier loan if the idempotency key was already used
    2. Check membership and that no loan is already active in the group
    3. Fetch (or compute) the eligibility verdict
    4. Create the loan in `pending`

    A replayed idempotency key answers 200 with `duplicate=true`.
    """
    result = service.apply(
        member_id=request_body.member_id,
        group_id=request_body.group_id,
        amount=request_body.amount,
        reason=request_body.reason,
        idempotency_key=request_body.idempotency_key,
        actor_id=request_body.actor_id,
    )
    if result.duplicate:
        response.status_code = 200
    return LoanResponse.from_domain(result.loan, duplicate=result.duplicate)


@router.get("/loans/{loan_id}", response_model=LoanResponse)
def get_loan(loan_id: str, service: LoanService = Depends(get_loan_service)):
    return LoanResponse.from_domain(service.get_loan(loan_id))


@router.post("/loans/{loan_id}/approve", response_model=LoanResponse)
def approve_loan(loan_id: str, request_body: ApproveRequest, service: LoanService = Depends(get_loan_service)):
    loan = service.approve(
        loan_id,
        actor_id=request_body.actor_id,
        interest_rate=request_body.interest_rate,
        repayment_period_months=request_body.repayment_period_months,
    )
    return LoanResponse.from_domain(loan)


@router.post("/loans/{loan_id}/reject", response_model=LoanResponse)
def reject_loan(loan_id: str, request_body: ReasonRequest, service: LoanService = Depends(get_loan_service)):
    loan = service.reject(loan_id, actor_id=request_body.actor_id, reason=request_body.reason)
    return LoanResponse.from_domain(loan)


@router.post("/loans/{loan_id}/disburse", response_model=DisbursementResponse)
def disburse_loan(loan_id: str, request_body: ActorRequest, service: LoanService = Depends(get_loan_service)):
    """Disburse an approved loan and create its repayment schedule"""
    loan, schedule = service.disburse(loan_id, actor_id=request_body.actor_id)
    return DisbursementResponse(
        loan=LoanResponse.from_domain(loan),
        schedule=ScheduleResponse.from_domain(schedule, payment_summary(schedule)),
    )


@router.post("/loans/{loan_id}/payments", response_model=PaymentResponse)
def record_payment(loan_id: str, request_body: PaymentRequest, service: LoanService = Depends(get_loan_service)):
    """
    Record a repayment.

    Without `installment_number` the amount is spread over the oldest
    unsettled installments. Paying off the schedule marks the loan repaid.
    """
    result = service.record_payment(
        loan_id,
        amount=request_body.amount,
        method=request_body.method,
        actor_id=request_body.actor_id,
        reference=request_body.reference,
        installment_number=request_body.installment_number,
    )
    return PaymentResponse(
        loan=LoanResponse.from_domain(result.loan),
        schedule=ScheduleResponse.from_domain(result.schedule, payment_summary(result.schedule)),
        payments=[PaymentSchema.from_domain(p) for p in result.payments],
        duplicate=result.duplicate,
    )


@router.post("/loans/{loan_id}/default", response_model=DisbursementResponse)
def mark_default(loan_id: str, request_body: ReasonRequest, service: LoanService = Depends(get_loan_service)):
    loan, schedule = service.mark_default(loan_id, actor_id=request_body.actor_id, reason=request_body.reason)
    return DisbursementResponse(
        loan=LoanResponse.from_domain(loan),
        schedule=ScheduleResponse.from_domain(schedule, payment_summary(schedule)),
    )


@router.post("/loans/{loan_id}/penalties", response_model=PenaltyResponse)
def recalculate_penalties(
    loan_id: str, request_body: ActorRequest, service: LoanService = Depends(get_loan_service)
):
    """Bring late fees up to date; `amount` is the newly added penalty"""
    schedule, added = service.recalculate_penalties(loan_id, actor_id=request_body.actor_id)
    return PenaltyResponse(schedule=ScheduleResponse.from_domain(schedule, payment_summary(schedule)), amount=added)


@router.post("/loans/{loan_id}/penalties/forgive", response_model=PenaltyResponse)
def forgive_penalties(
    loan_id: str, request_body: ForgivePenaltyRequest, service: LoanService = Depends(get_loan_service)
):
    """Waive an installment's unpaid penalty; `amount` is what was forgiven"""
    schedule, forgiven = service.forgive_penalties(
        loan_id, request_body.installment_number, actor_id=request_body.actor_id
    )
    return PenaltyResponse(schedule=ScheduleResponse.from_domain(schedule, payment_summary(schedule)), amount=forgiven)


@router.get("/members/{member_id}/loans", response_model=LoanListResponse)
def list_member_loans(
    member_id: str,
    group_id: Optional[str] = Query(None),
    service: LoanService = Depends(get_loan_service),
):
    """Loans of a member, newest first"""
    loans = service.list_member_loans(member_id, group_id)
    return LoanListResponse(member_id=member_id, loans=[LoanResponse.from_domain(ln) for ln in loans])
