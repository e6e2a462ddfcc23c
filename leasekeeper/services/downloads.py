"""Artifact download resolution.

``resolve_download`` is the only path that hands out presigned artifact URLs.
Each attempt walks lease -> assignment -> release -> storage and always ends
with exactly one ``artifact_download_audit`` row, written before any error is
returned to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.core.errors import ArtifactError, LeaseKeeperError
from leasekeeper.providers.storage.base import StorageProvider
from leasekeeper.services.artifacts import (
    RELEASE_STATUS_ACTIVE,
    find_release,
    get_effective_assignment,
    normalize_scope,
)
from leasekeeper.services.audit import DownloadAuditDraft, record_download_audit
from leasekeeper.services.lease_resolver import resolve_active_lease_by_token
from leasekeeper.services.leases import LeaseConfig
from leasekeeper.services.vm_registry import normalize_vm_uuid


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadGrant:
    download_url: str
    url_expires_at: int
    release_id: int
    version: str
    sha256: str
    size_bytes: int


def classify_error(exc: Exception) -> LeaseKeeperError:
    # Typed errors keep their status and code; everything else becomes a stable 500.
    if isinstance(exc, LeaseKeeperError):
        return exc
    if isinstance(exc, SQLAlchemyError):
        return ArtifactError(500, "DB_ERROR", "Artifact download resolution failed on the database")
    return ArtifactError(500, "ARTIFACT_RESOLVE_FAILED", "Failed to resolve artifact download")


async def _record_cancelled(session: AsyncSession, draft: DownloadAuditDraft) -> None:
    try:
        await session.rollback()
        await record_download_audit(session, draft)
    except (ArtifactError, SQLAlchemyError):
        # Cancellation still propagates to the caller; a failed audit write is only logged.
        logger.error("artifact_resolve_cancel_audit_failed tenant_id=%s lease_id=%s", draft.tenant_id, draft.lease_id)
        return
    logger.info("artifact_resolve_cancelled tenant_id=%s lease_id=%s", draft.tenant_id, draft.lease_id)


async def resolve_download(
    session: AsyncSession,
    *,
    config: LeaseConfig,
    storage: StorageProvider,
    tenant_id: str,
    actor_id: str | None,
    lease_token: str | None,
    vm_uuid: str,
    module: str,
    platform: str,
    channel: str | None = None,
    request_ip: str | None = None,
) -> DownloadGrant:
    scope = normalize_scope(module, platform, channel)
    normalized_vm_uuid = normalize_vm_uuid(vm_uuid)
    draft = DownloadAuditDraft(
        tenant_id=tenant_id,
        module=scope.module,
        platform=scope.platform,
        channel=scope.channel,
        vm_uuid=normalized_vm_uuid,
        user_id=str(actor_id or "").strip() or None,
        request_ip=request_ip,
    )

    try:
        resolved = await resolve_active_lease_by_token(
            session,
            config=config,
            tenant_id=tenant_id,
            token=lease_token,
            expected_vm_uuid=normalized_vm_uuid,
            expected_module=scope.module,
        )
        acting_user = resolved.user_id or draft.user_id
        draft.lease_id = resolved.lease_id
        draft.lease_jti = str(resolved.token_payload.get("jti") or resolved.lease_id)
        draft.user_id = acting_user

        assignment = await get_effective_assignment(
            session,
            tenant_id=tenant_id,
            user_id=acting_user,
            module=scope.module,
            platform=scope.platform,
            channel=scope.channel,
        )
        effective = assignment.effective_assignment
        if effective is None:
            raise ArtifactError(
                404,
                "ARTIFACT_ASSIGNMENT_NOT_FOUND",
                "No artifact assignment for this module, platform and channel",
            )
        draft.release_id = int(effective.release_id)

        release = await find_release(session, tenant_id=tenant_id, release_id=int(effective.release_id))
        if release is None:
            raise ArtifactError(404, "ARTIFACT_RELEASE_NOT_FOUND", "Assigned artifact release not found")
        if str(release.status or "").lower() != RELEASE_STATUS_ACTIVE:
            raise ArtifactError(
                409,
                "ARTIFACT_RELEASE_NOT_ACTIVE",
                "Assigned artifact release is not active",
                {"status": release.status},
            )

        # Catches catalog rows whose object was deleted or never uploaded.
        head = await storage.head_object(release.object_key)
        if not head.exists:
            raise ArtifactError(404, "ARTIFACT_OBJECT_NOT_FOUND", "Artifact object not found in storage")

        presigned = await storage.create_presigned_download_url(release.object_key)
        grant = DownloadGrant(
            download_url=presigned.url,
            url_expires_at=presigned.expires_at_ms,
            release_id=int(release.id),
            version=release.version,
            sha256=release.sha256,
            size_bytes=int(release.size_bytes),
        )
        draft.mark_allowed(url_expires_at_ms=presigned.expires_at_ms, source=assignment.source or "tenant-default")
    except asyncio.CancelledError:
        # A cancelled attempt is still an attempt; shield the audit write from the cancellation.
        draft.mark_failed(status=500, code="REQUEST_CANCELLED")
        await asyncio.shield(_record_cancelled(session, draft))
        raise
    except Exception as exc:
        error = classify_error(exc)
        if error is not exc:
            logger.exception(
                "artifact_resolve_unexpected_error tenant_id=%s lease_id=%s",
                tenant_id,
                draft.lease_id,
            )
        draft.mark_failed(status=error.status, code=error.code)
        # Drop whatever the failed attempt left in the transaction before auditing.
        await session.rollback()
        try:
            await record_download_audit(session, draft)
        except ArtifactError as audit_exc:
            raise audit_exc from exc
        logger.info(
            "artifact_resolve_denied tenant_id=%s lease_id=%s code=%s",
            tenant_id,
            draft.lease_id,
            error.code,
        )
        if error is exc:
            raise
        raise error from exc

    await record_download_audit(session, draft)
    logger.info(
        "artifact_resolve_allowed tenant_id=%s lease_id=%s release_id=%s",
        tenant_id,
        draft.lease_id,
        grant.release_id,
    )
    return grant
