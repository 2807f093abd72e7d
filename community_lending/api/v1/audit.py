"""GET /v1/audit - Query the audit trail"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from community_lending.api.dependencies import get_audit_trail
from community_lending.api.v1.schemas import AuditEntrySchema, AuditResponse
from community_lending.services.audit import AuditTrail

router = APIRouter()


@router.get("/audit", response_model=AuditResponse)
def query_audit_trail(
    loan_id: Optional[str] = Query(None),
    member_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None, description="Inclusive lower bound on created_at"),
    until: Optional[datetime] = Query(None, description="Exclusive upper bound on created_at"),
    limit: int = Query(200, ge=1, le=1000),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """
    Retrieve audit entries matching every given filter.

    Returns:
        Entries in creation order, successes and failed attempts alike
    """
    entries = trail.query(
        loan_id=loan_id,
        member_id=member_id,
        actor_id=actor_id,
        since=since,
        until=until,
        limit=limit,
    )
    return AuditResponse(entries=[AuditEntrySchema.from_domain(e) for e in entries])
