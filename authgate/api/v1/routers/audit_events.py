from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.api import deps
from authgate.core.security import SessionClaims
from authgate.schemas.audit import AuditEventListResponse, AuditEventOut
from authgate.services import audit

router = APIRouter(prefix="/audit-events", tags=["audit"])


@router.get("", response_model=AuditEventListResponse, summary="List the caller's recent security events")
async def list_audit_events(
    limit: int = Query(50, ge=1, le=200),
    claims: SessionClaims = Depends(deps.get_session_claims),
    db: AsyncSession = Depends(deps.get_db_session),
) -> AuditEventListResponse:
    events = await audit.list_events(db, claims.identity_id, limit=limit)
    items = [AuditEventOut.model_validate(event) for event in events]
    return AuditEventListResponse(items=items, total=len(items))
