from __future__ import annotations

from dataclasses import asdict
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_lease_config,
    reject_tenant_id_in_body,
    require_role,
)
from leasekeeper.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leasekeeper.apps.api.response import SuccessEnvelope, success_response
from leasekeeper.core.errors import LeaseKeeperError
from leasekeeper.services.audit import get_request_context, record_event
from leasekeeper.services.auth.api_keys import role_allows
from leasekeeper.services.leases import (
    LeaseConfig,
    heartbeat_lease,
    issue_execution_lease,
    revoke_lease,
)


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/license",
    tags=["license"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_tenant_id_in_body)],
)

# Callers at or above this role may act on behalf of another user.
ACT_AS_MIN_ROLE = "api"


class LeaseRequest(BaseModel):
    vm_uuid: str = Field(min_length=1, max_length=128)
    user_id: str | None = Field(default=None, max_length=200)
    agent_id: str = Field(min_length=1, max_length=200)
    runner_id: str = Field(min_length=1, max_length=200)
    module: str = Field(min_length=1, max_length=200)
    version: str | None = Field(default=None, max_length=100)


class LeaseResponse(BaseModel):
    lease_id: str
    token: str
    expires_at: int
    tenant_id: str
    user_id: str
    vm_uuid: str
    module: str


class HeartbeatRequest(BaseModel):
    lease_id: str = Field(min_length=1, max_length=200)


class HeartbeatResponse(BaseModel):
    lease_id: str
    status: str
    expires_at: int
    last_heartbeat_at: int


class RevokeRequest(BaseModel):
    lease_id: str = Field(min_length=1, max_length=200)
    reason: str | None = Field(default=None, max_length=500)


class RevokeResponse(BaseModel):
    lease_id: str
    status: str
    revoked_at: int


def resolve_acting_user_id(principal: Principal, requested_user_id: str | None) -> str:
    requested = (requested_user_id or "").strip()
    if requested and requested != principal.subject_id:
        if not role_allows(role=principal.role, minimum_role=ACT_AS_MIN_ROLE):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "FORBIDDEN", "message": "user_id override requires a service role"},
            )
        return requested
    if not principal.subject_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "user_id is required"},
        )
    return principal.subject_id


async def _audit(
    db: AsyncSession,
    request: Request,
    principal: Principal,
    *,
    event_type: str,
    outcome: str,
    resource_id: str | None,
    metadata: dict,
    error_code: str | None = None,
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_type=principal.auth_method,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        event_type=event_type,
        outcome=outcome,
        resource_type="execution_lease",
        resource_id=resource_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata=metadata,
        error_code=error_code,
        commit=True,
        best_effort=True,
    )


@router.post(
    "/lease",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[LeaseResponse],
)
async def create_lease(
    request: Request,
    body: LeaseRequest,
    principal: Principal = Depends(get_current_principal),
    config: LeaseConfig = Depends(get_lease_config),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user_id = resolve_acting_user_id(principal, body.user_id)
    metadata = {"user_id": user_id, "vm_uuid": body.vm_uuid, "module": body.module}
    try:
        grant = await issue_execution_lease(
            db,
            config=config,
            tenant_id=principal.tenant_id,
            user_id=user_id,
            vm_uuid=body.vm_uuid,
            agent_id=body.agent_id,
            runner_id=body.runner_id,
            module=body.module,
            version=body.version,
        )
    except LeaseKeeperError as exc:
        await _audit(
            db,
            request,
            principal,
            event_type="license.lease.denied",
            outcome="failure",
            resource_id=None,
            metadata=metadata,
            error_code=exc.code,
        )
        raise
    await _audit(
        db,
        request,
        principal,
        event_type="license.lease.issued",
        outcome="success",
        resource_id=grant.lease_id,
        metadata={**metadata, "expires_at": grant.expires_at},
    )
    return success_response(request=request, data=LeaseResponse(**asdict(grant)).model_dump())


@router.post("/heartbeat", response_model=SuccessEnvelope[HeartbeatResponse])
async def heartbeat(
    request: Request,
    body: HeartbeatRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await heartbeat_lease(
        db,
        tenant_id=principal.tenant_id,
        lease_id=body.lease_id,
        user_id=principal.subject_id,
    )
    await _audit(
        db,
        request,
        principal,
        event_type="license.lease.heartbeat",
        outcome="success",
        resource_id=result.lease_id,
        metadata={"last_heartbeat_at": result.last_heartbeat_at},
    )
    return success_response(request=request, data=HeartbeatResponse(**asdict(result)).model_dump())


@router.post("/revoke", response_model=SuccessEnvelope[RevokeResponse])
async def revoke(
    request: Request,
    body: RevokeRequest,
    principal: Principal = Depends(require_role("infra")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await revoke_lease(
        db,
        tenant_id=principal.tenant_id,
        lease_id=body.lease_id,
        actor_id=principal.subject_id,
        reason=body.reason,
    )
    await _audit(
        db,
        request,
        principal,
        event_type="license.lease.revoked",
        outcome="success",
        resource_id=result.lease_id,
        metadata={"reason": body.reason, "revoked_at": result.revoked_at},
    )
    return success_response(request=request, data=RevokeResponse(**asdict(result)).model_dump())
