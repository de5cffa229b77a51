"""Admin endpoints (requires Basic auth)."""
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from keygate.deps import get_audit_repository
from keygate.security import require_basic_user
from keygate.services.audit import AuditRepository


router = APIRouter(prefix="/admin", tags=["admin"])


class AuditEventItem(BaseModel):
    id: str
    actor_type: str
    actor_id: str
    action: str
    subject_type: str | None = None
    subject_id: str | None = None
    severity: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip: str | None = None
    user_agent: str | None = None
    created_at: str


@router.get("/audit-events", response_model=List[AuditEventItem], summary="List audit events")
async def list_audit_events(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor_type: str | None = Query(None),
    actor_id: str | None = Query(None),
    action: str | None = Query(None),
    subject_id: str | None = Query(None),
    severity: str | None = Query(None),
    since: datetime | None = Query(None, description="Only events at or after this time"),
    _: dict = Depends(require_basic_user),
    repo: AuditRepository = Depends(get_audit_repository),
) -> list[AuditEventItem]:
    events = await repo.list_events(
        limit=limit,
        offset=offset,
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        subject_id=subject_id,
        severity=severity,
        since=since,
    )
    return [AuditEventItem(**asdict(e)) for e in events]
