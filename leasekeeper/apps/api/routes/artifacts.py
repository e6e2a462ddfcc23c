from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.apps.api.deps import (
    Principal,
    client_ip,
    get_current_principal,
    get_db,
    get_lease_config,
    get_storage,
    reject_tenant_id_in_body,
    require_role,
)
from leasekeeper.apps.api.openapi import DEFAULT_ERROR_RESPONSES, STORAGE_ERROR_RESPONSES
from leasekeeper.apps.api.response import SuccessEnvelope, split_page, success_response
from leasekeeper.domain.models import ArtifactAssignment, ArtifactDownloadAudit, ArtifactRelease
from leasekeeper.persistence.repos import artifacts as artifacts_repo
from leasekeeper.providers.storage.base import StorageProvider
from leasekeeper.services.artifacts import create_release, get_effective_assignment, upsert_assignment
from leasekeeper.services.audit import get_request_context, record_event
from leasekeeper.services.downloads import resolve_download
from leasekeeper.services.leases import LeaseConfig


router = APIRouter(
    prefix="/artifacts",
    tags=["artifacts"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_tenant_id_in_body)],
)


class ReleaseCreateRequest(BaseModel):
    module: str = Field(max_length=200)
    platform: str = Field(max_length=100)
    channel: str | None = Field(default=None, max_length=100)
    version: str = Field(max_length=100)
    object_key: str = Field(max_length=1024)
    sha256: str = Field(max_length=64)
    size_bytes: int
    status: str | None = Field(default=None, max_length=20)


class ReleaseResponse(BaseModel):
    id: int
    tenant_id: str
    module: str
    platform: str
    channel: str
    version: str
    object_key: str
    sha256: str
    size_bytes: int
    status: str
    created_by: str | None
    updated_by: str | None
    created_at: str | None


class AssignRequest(BaseModel):
    user_id: str | None = Field(default=None, max_length=200)
    module: str = Field(max_length=200)
    platform: str = Field(max_length=100)
    channel: str | None = Field(default=None, max_length=100)
    release_id: int


class AssignmentResponse(BaseModel):
    id: int
    tenant_id: str
    module: str
    platform: str
    channel: str
    user_id: str | None
    release_id: int
    is_default: bool
    created_by: str | None
    updated_by: str | None
    created_at: str | None


class EffectiveAssignmentResponse(BaseModel):
    user_assignment: AssignmentResponse | None
    default_assignment: AssignmentResponse | None
    effective_assignment: AssignmentResponse | None


class ResolveDownloadRequest(BaseModel):
    lease_token: str = Field(min_length=1, max_length=8192)
    vm_uuid: str = Field(min_length=1, max_length=128)
    module: str = Field(min_length=1, max_length=200)
    platform: str = Field(min_length=1, max_length=100)
    channel: str | None = Field(default=None, max_length=100)


class DownloadResponse(BaseModel):
    download_url: str
    url_expires_at: int
    release_id: int
    version: str
    sha256: str
    size_bytes: int


class DownloadAuditResponse(BaseModel):
    id: int
    lease_id: str | None
    lease_jti: str | None
    user_id: str | None
    vm_uuid: str | None
    module: str
    platform: str
    channel: str
    release_id: int | None
    event_type: str
    result: str
    reason: str | None
    request_ip: str | None
    url_expires_at_ms: int | None
    metadata_json: dict[str, Any] | None
    created_at: str | None


class DownloadAuditPage(BaseModel):
    items: list[DownloadAuditResponse]
    next_offset: int | None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _release_response(release: ArtifactRelease) -> ReleaseResponse:
    return ReleaseResponse(
        id=release.id,
        tenant_id=release.tenant_id,
        module=release.module,
        platform=release.platform,
        channel=release.channel,
        version=release.version,
        object_key=release.object_key,
        sha256=release.sha256,
        size_bytes=release.size_bytes,
        status=release.status,
        created_by=release.created_by,
        updated_by=release.updated_by,
        created_at=_iso(release.created_at),
    )


def _assignment_response(assignment: ArtifactAssignment | None) -> AssignmentResponse | None:
    if assignment is None:
        return None
    return AssignmentResponse(
        id=assignment.id,
        tenant_id=assignment.tenant_id,
        module=assignment.module,
        platform=assignment.platform,
        channel=assignment.channel,
        user_id=assignment.user_id,
        release_id=assignment.release_id,
        is_default=assignment.is_default,
        created_by=assignment.created_by,
        updated_by=assignment.updated_by,
        created_at=_iso(assignment.created_at),
    )


def _download_audit_response(row: ArtifactDownloadAudit) -> DownloadAuditResponse:
    return DownloadAuditResponse(
        id=row.id,
        lease_id=row.lease_id,
        lease_jti=row.lease_jti,
        user_id=row.user_id,
        vm_uuid=row.vm_uuid,
        module=row.module,
        platform=row.platform,
        channel=row.channel,
        release_id=row.release_id,
        event_type=row.event_type,
        result=row.result,
        reason=row.reason,
        request_ip=row.request_ip,
        url_expires_at_ms=row.url_expires_at_ms,
        metadata_json=row.metadata_json,
        created_at=_iso(row.created_at),
    )


async def _audit_change(
    db: AsyncSession,
    request: Request,
    principal: Principal,
    *,
    event_type: str,
    resource_type: str,
    resource_id: str,
    metadata: dict[str, Any],
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_type=principal.auth_method,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        event_type=event_type,
        outcome="success",
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata=metadata,
        commit=True,
        best_effort=True,
    )


@router.post(
    "/releases",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[ReleaseResponse],
)
async def create_artifact_release(
    request: Request,
    body: ReleaseCreateRequest,
    principal: Principal = Depends(require_role("infra")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    release = await create_release(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.subject_id,
        payload=body.model_dump(),
    )
    payload = _release_response(release)
    await _audit_change(
        db,
        request,
        principal,
        event_type="artifacts.release.created",
        resource_type="artifact_release",
        resource_id=str(payload.id),
        metadata={"module": payload.module, "platform": payload.platform, "version": payload.version},
    )
    return success_response(request=request, data=payload.model_dump())


@router.post(
    "/assign",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[AssignmentResponse],
)
async def assign_artifact(
    request: Request,
    body: AssignRequest,
    principal: Principal = Depends(require_role("infra")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    assignment = await upsert_assignment(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.subject_id,
        payload=body.model_dump(),
    )
    payload = _assignment_response(assignment)
    await _audit_change(
        db,
        request,
        principal,
        event_type="artifacts.assignment.upserted",
        resource_type="artifact_assignment",
        resource_id=str(payload.id),
        metadata={
            "module": payload.module,
            "platform": payload.platform,
            "channel": payload.channel,
            "user_id": payload.user_id,
            "release_id": payload.release_id,
        },
    )
    return success_response(request=request, data=payload.model_dump())


@router.get(
    "/assign/{user_id}/{module}",
    response_model=SuccessEnvelope[EffectiveAssignmentResponse],
)
async def get_assignment(
    request: Request,
    user_id: str,
    module: str,
    platform: str = Query(default="windows", max_length=100),
    channel: str = Query(default="stable", max_length=100),
    principal: Principal = Depends(require_role("infra")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await get_effective_assignment(
        db,
        tenant_id=principal.tenant_id,
        user_id=user_id,
        module=module,
        platform=platform,
        channel=channel,
    )
    payload = EffectiveAssignmentResponse(
        user_assignment=_assignment_response(result.user_assignment),
        default_assignment=_assignment_response(result.default_assignment),
        effective_assignment=_assignment_response(result.effective_assignment),
    )
    return success_response(request=request, data=payload.model_dump())


@router.post(
    "/resolve-download",
    response_model=SuccessEnvelope[DownloadResponse],
    responses=STORAGE_ERROR_RESPONSES,
)
async def resolve_artifact_download(
    request: Request,
    body: ResolveDownloadRequest,
    principal: Principal = Depends(get_current_principal),
    config: LeaseConfig = Depends(get_lease_config),
    storage: StorageProvider = Depends(get_storage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await resolve_download(
        db,
        config=config,
        storage=storage,
        tenant_id=principal.tenant_id,
        actor_id=principal.subject_id,
        lease_token=body.lease_token,
        vm_uuid=body.vm_uuid,
        module=body.module,
        platform=body.platform,
        channel=body.channel,
        request_ip=client_ip(request),
    )
    return success_response(request=request, data=DownloadResponse(**asdict(grant)).model_dump())


@router.get("/audit", response_model=SuccessEnvelope[DownloadAuditPage])
async def list_download_audit(
    request: Request,
    lease_id: str | None = None,
    result: str | None = Query(default=None, pattern="^(allowed|denied|error)$"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("infra")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await artifacts_repo.list_download_audit(
        db,
        tenant_id=principal.tenant_id,
        lease_id=lease_id,
        result=result,
        offset=offset,
        limit=limit + 1,
    )
    rows, next_offset = split_page(rows, offset=offset, limit=limit)
    page = DownloadAuditPage(items=[_download_audit_response(row) for row in rows], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())
