"""Eligibility endpoints - cached verdict lookup and admin override"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from community_lending.api.dependencies import get_eligibility_service
from community_lending.api.v1.schemas import EligibilityResponse, OverrideRequest
from community_lending.services.eligibility import EligibilityService

router = APIRouter()


@router.get("/eligibility/{member_id}/{group_id}", response_model=EligibilityResponse)
def get_eligibility(
    member_id: str,
    group_id: str,
    actor_id: Optional[str] = Query(None, description="Defaults to the member"),
    service: EligibilityService = Depends(get_eligibility_service),
):
    """
    Return the member's active eligibility verdict for a group.

    Serves the newest unexpired assessment, scoring afresh when none exists.
    """
    assessment, cached = service.check(member_id, group_id, actor_id or member_id)
    return EligibilityResponse.from_domain(assessment, cached=cached)


@router.post("/eligibility/override", response_model=EligibilityResponse, status_code=201)
def override_eligibility(
    request_body: OverrideRequest,
    service: EligibilityService = Depends(get_eligibility_service),
):
    """Force a verdict; the new assessment supersedes the cached one"""
    assessment = service.override(
        member_id=request_body.member_id,
        group_id=request_body.group_id,
        is_eligible=request_body.is_eligible,
        actor_id=request_body.actor_id,
        notes=request_body.notes,
    )
    return EligibilityResponse.from_domain(assessment)
