from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.apps.api.deps import Principal, get_db, require_role
from leasekeeper.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leasekeeper.apps.api.response import SuccessEnvelope, split_page, success_response
from leasekeeper.persistence.repos import audit as audit_repo
from leasekeeper.persistence.repos.audit import AuditEventFilter


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurred_at: datetime
    tenant_id: str | None
    actor_type: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    ip_address: str | None
    user_agent: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _db_error(what: str) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={"code": "DB_ERROR", "message": f"Database error while fetching {what}"},
    )


@router.get("/events", response_model=SuccessEnvelope[AuditEventsPage])
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """List generic audit events (auth, RBAC, operator actions) for the caller's tenant."""
    try:
        rows = await audit_repo.list_events(
            db,
            tenant_id=principal.tenant_id,
            event_filter=AuditEventFilter(
                event_type=event_type,
                outcome=outcome,
                resource_type=resource_type,
                resource_id=resource_id,
                occurred_from=occurred_from,
                occurred_to=occurred_to,
            ),
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise _db_error("audit events") from exc

    rows, next_offset = split_page(rows, offset=offset, limit=limit)
    page = AuditEventsPage(
        items=[AuditEventResponse.model_validate(row) for row in rows],
        next_offset=next_offset,
    )
    return success_response(request=request, data=page.model_dump(mode="json"))


@router.get("/events/{event_id}", response_model=SuccessEnvelope[AuditEventResponse])
async def get_audit_event(
    request: Request,
    event_id: int,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        event = await audit_repo.get_event(db, tenant_id=principal.tenant_id, event_id=event_id)
    except SQLAlchemyError as exc:
        raise _db_error("audit event") from exc
    # Other tenants' events are indistinguishable from missing ones.
    if event is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Audit event not found"})
    return success_response(request=request, data=AuditEventResponse.model_validate(event).model_dump(mode="json"))
