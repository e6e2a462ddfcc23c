from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.apps.api.deps import Principal, get_current_principal, get_db, reject_tenant_id_in_body
from leasekeeper.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leasekeeper.apps.api.response import SuccessEnvelope, success_response
from leasekeeper.apps.api.routes.license import resolve_acting_user_id
from leasekeeper.domain.models import VmRegistration
from leasekeeper.services.audit import get_request_context, record_event
from leasekeeper.services.vm_registry import register_vm, resolve_vm


router = APIRouter(
    prefix="/vms",
    tags=["vms"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_tenant_id_in_body)],
)


class VmRegisterRequest(BaseModel):
    vm_uuid: str = Field(min_length=8, max_length=128, pattern=r"^[A-Za-z0-9:_-]+$")
    user_id: str | None = Field(default=None, max_length=200)
    vm_name: str | None = Field(default=None, max_length=200)
    project_id: str | None = Field(default=None, max_length=200)
    status: str | None = Field(default=None, pattern="^(active|paused|revoked)$")
    metadata: dict[str, Any] | None = None


class VmResponse(BaseModel):
    vm_uuid: str
    user_id: str | None
    vm_name: str | None
    project_id: str | None
    status: str
    metadata: dict[str, Any] | None
    created_at: str | None
    updated_at: str | None


def _vm_response(vm: VmRegistration) -> VmResponse:
    return VmResponse(
        vm_uuid=vm.vm_uuid,
        user_id=vm.user_id,
        vm_name=vm.vm_name,
        project_id=vm.project_id,
        status=vm.status,
        metadata=vm.metadata_json,
        created_at=vm.created_at.isoformat() if vm.created_at else None,
        updated_at=vm.updated_at.isoformat() if vm.updated_at else None,
    )


@router.post("/register", response_model=SuccessEnvelope[VmResponse])
async def register(
    request: Request,
    response: Response,
    body: VmRegisterRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner = resolve_acting_user_id(principal, body.user_id)
    vm, created = await register_vm(
        db,
        tenant_id=principal.tenant_id,
        user_id=owner,
        vm_uuid=body.vm_uuid,
        vm_name=body.vm_name,
        project_id=body.project_id,
        status=body.status,
        metadata=body.metadata,
    )
    payload = _vm_response(vm)
    if created:
        response.status_code = status.HTTP_201_CREATED
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_type=principal.auth_method,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        event_type="vm.registered",
        outcome="success",
        resource_type="vm_registration",
        resource_id=payload.vm_uuid,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"user_id": owner, "created": created, "status": payload.status},
        commit=True,
        best_effort=True,
    )
    return success_response(request=request, data=payload.model_dump())


@router.get("/{vm_uuid}", response_model=SuccessEnvelope[VmResponse])
async def get_vm(
    request: Request,
    vm_uuid: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    vm = await resolve_vm(db, tenant_id=principal.tenant_id, vm_uuid=vm_uuid)
    if vm is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "VM_NOT_REGISTERED", "message": "VM is not registered for this tenant"},
        )
    return success_response(request=request, data=_vm_response(vm).model_dump())
