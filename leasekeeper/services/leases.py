from __future__ import annotations

from dataclasses import dataclass
import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.core import clock
from leasekeeper.core.config import MIN_LEASE_TTL_SECONDS, Settings, get_settings
from leasekeeper.core.errors import LeaseKeeperError, LicenseError
from leasekeeper.domain.models import ExecutionLease
from leasekeeper.persistence.repos import leases as leases_repo
from leasekeeper.services.licensing import ensure_active_license, ensure_entitlement
from leasekeeper.services.tokens import LeaseTokenCodec
from leasekeeper.services.vm_registry import ensure_vm_ownership, normalize_vm_uuid


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseConfig:
    # Explicit lease configuration handed to every lease operation.
    secret: str | None
    ttl_seconds: int
    issuer: str

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LeaseConfig":
        resolved = settings or get_settings()
        return cls(
            secret=resolved.license_lease_secret,
            ttl_seconds=max(MIN_LEASE_TTL_SECONDS, int(resolved.license_lease_ttl_seconds)),
            issuer=resolved.license_lease_issuer,
        )

    def codec(self) -> LeaseTokenCodec:
        # Fails with CONFIG_ERROR when the secret is unset.
        return LeaseTokenCodec(self.secret)


@dataclass(frozen=True)
class LeaseGrant:
    lease_id: str
    token: str
    expires_at: int
    tenant_id: str
    user_id: str
    vm_uuid: str
    module: str


@dataclass(frozen=True)
class LeaseHeartbeat:
    lease_id: str
    status: str
    expires_at: int
    last_heartbeat_at: int


@dataclass(frozen=True)
class LeaseRevocation:
    lease_id: str
    status: str
    revoked_at: int


def _require(field: str, value: str | None) -> str:
    normalized = str(value or "").strip()
    if not normalized:
        raise LicenseError(400, "BAD_REQUEST", f"{field} is required", {"field": field})
    return normalized


async def issue_execution_lease(
    session: AsyncSession,
    *,
    config: LeaseConfig,
    tenant_id: str,
    user_id: str | None,
    vm_uuid: str,
    agent_id: str | None,
    runner_id: str | None,
    module: str | None,
    version: str | None = None,
) -> LeaseGrant:
    normalized_user = _require("user_id", user_id)
    normalized_agent = _require("agent_id", agent_id)
    normalized_runner = _require("runner_id", runner_id)
    normalized_module = _require("module", module)
    normalized_version = str(version or "").strip() or None
    normalized_vm_uuid = normalize_vm_uuid(vm_uuid)
    codec = config.codec()

    # Ownership and license are independent checks; entitlement runs only after both pass.
    vm = await ensure_vm_ownership(
        session,
        tenant_id=tenant_id,
        user_id=normalized_user,
        vm_uuid=normalized_vm_uuid,
    )
    license_row = await ensure_active_license(session, tenant_id=tenant_id, user_id=normalized_user)
    await ensure_entitlement(
        session,
        tenant_id=tenant_id,
        user_id=normalized_user,
        module=normalized_module,
    )

    now_ms = clock.now_ms()
    now_s = now_ms // 1000
    exp = now_s + config.ttl_seconds
    lease_id = str(uuid.uuid4())
    token = codec.sign(
        {
            "iss": config.issuer,
            "sub": normalized_runner,
            "jti": lease_id,
            "iat": now_s,
            "exp": exp,
            "tenant_id": tenant_id,
            "user_id": normalized_user,
            "vm_uuid": normalized_vm_uuid,
            "agent_id": normalized_agent,
            "module": normalized_module,
            "version": normalized_version,
            "license_id": str(license_row.id),
        }
    )
    lease = ExecutionLease(
        id=lease_id,
        tenant_id=tenant_id,
        token=token,
        status="active",
        created_at_ms=now_ms,
        updated_at_ms=now_ms,
        expires_at_ms=exp * 1000,
        last_heartbeat_at_ms=now_ms,
        user_id=normalized_user,
        vm_uuid=normalized_vm_uuid,
        vm_name=vm.vm_name,
        module=normalized_module,
        version=normalized_version,
        agent_id=normalized_agent,
        runner_id=normalized_runner,
        license_id=str(license_row.id),
    )
    try:
        session.add(lease)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("lease_persist_failed tenant_id=%s lease_id=%s", tenant_id, lease_id, exc_info=exc)
        raise LicenseError(500, "DB_ERROR", "Failed to persist execution lease") from exc

    logger.info(
        "lease_issued tenant_id=%s lease_id=%s user_id=%s vm_uuid=%s module=%s",
        tenant_id,
        lease_id,
        normalized_user,
        normalized_vm_uuid,
        normalized_module,
    )
    return LeaseGrant(
        lease_id=lease_id,
        token=token,
        expires_at=lease.expires_at_ms,
        tenant_id=tenant_id,
        user_id=normalized_user,
        vm_uuid=normalized_vm_uuid,
        module=normalized_module,
    )


async def _load_for_update(session: AsyncSession, *, tenant_id: str, lease_id: str) -> ExecutionLease:
    lease = await leases_repo.get_lease(session, tenant_id=tenant_id, lease_id=lease_id, for_update=True)
    if lease is None:
        raise LicenseError(404, "LEASE_NOT_FOUND", "Execution lease not found")
    return lease


async def _commit(session: AsyncSession, *, action: str, tenant_id: str, lease_id: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("lease_%s_failed tenant_id=%s lease_id=%s", action, tenant_id, lease_id, exc_info=exc)
        raise LicenseError(500, "DB_ERROR", f"Failed to {action} execution lease") from exc


async def heartbeat_lease(
    session: AsyncSession,
    *,
    tenant_id: str,
    lease_id: str | None,
    user_id: str | None,
) -> LeaseHeartbeat:
    normalized_id = _require("lease_id", lease_id)
    try:
        lease = await _load_for_update(session, tenant_id=tenant_id, lease_id=normalized_id)
        owner = str(lease.user_id or "").strip()
        if owner and owner != str(user_id or "").strip():
            raise LicenseError(403, "LEASE_OWNER_MISMATCH", "Execution lease belongs to another user")
        if lease.status != "active":
            raise LicenseError(409, "LEASE_INACTIVE", "Execution lease is not active")
        now_ms = clock.now_ms()
        if now_ms >= lease.expires_at_ms:
            raise LicenseError(409, "LEASE_EXPIRED", "Execution lease is expired")
    except LeaseKeeperError:
        # Release the row lock before surfacing the rejection.
        await session.rollback()
        raise

    # Heartbeats record liveness only; expires_at_ms is a hard ceiling.
    lease.last_heartbeat_at_ms = now_ms
    lease.updated_at_ms = now_ms
    await _commit(session, action="heartbeat", tenant_id=tenant_id, lease_id=normalized_id)
    logger.debug("lease_heartbeat tenant_id=%s lease_id=%s", tenant_id, normalized_id)
    return LeaseHeartbeat(
        lease_id=normalized_id,
        status=lease.status,
        expires_at=lease.expires_at_ms,
        last_heartbeat_at=now_ms,
    )


async def revoke_lease(
    session: AsyncSession,
    *,
    tenant_id: str,
    lease_id: str | None,
    actor_id: str | None,
    reason: str | None = None,
) -> LeaseRevocation:
    normalized_id = _require("lease_id", lease_id)
    try:
        lease = await _load_for_update(session, tenant_id=tenant_id, lease_id=normalized_id)
    except LeaseKeeperError:
        await session.rollback()
        raise

    if lease.status == "revoked" and lease.revoked_at_ms is not None:
        # Idempotent: the first revocation's timestamp and actor stand.
        revocation = LeaseRevocation(lease_id=normalized_id, status=lease.status, revoked_at=lease.revoked_at_ms)
        await session.rollback()
        return revocation

    now_ms = clock.now_ms()
    lease.status = "revoked"
    lease.revoked_at_ms = now_ms
    lease.revoked_by = str(actor_id or "").strip() or None
    lease.revoke_reason = str(reason or "").strip() or None
    lease.updated_at_ms = now_ms
    await _commit(session, action="revoke", tenant_id=tenant_id, lease_id=normalized_id)
    logger.info(
        "lease_revoked tenant_id=%s lease_id=%s revoked_by=%s",
        tenant_id,
        normalized_id,
        lease.revoked_by,
    )
    return LeaseRevocation(lease_id=normalized_id, status=lease.status, revoked_at=now_ms)
