from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.core import clock
from leasekeeper.core.errors import LicenseError
from leasekeeper.domain.models import ExecutionLease
from leasekeeper.persistence.repos import leases as leases_repo
from leasekeeper.services.leases import LeaseConfig
from leasekeeper.services.vm_registry import normalize_vm_uuid


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedLease:
    lease_id: str
    lease: ExecutionLease
    token_payload: dict[str, Any]
    tenant_id: str
    user_id: str | None
    vm_uuid: str
    module: str
    expires_at_ms: int


def _payload_expiry_ms(payload: dict[str, Any]) -> int:
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not math.isfinite(exp):
        return 0
    return int(exp * 1000)


async def resolve_active_lease_by_token(
    session: AsyncSession,
    *,
    config: LeaseConfig,
    tenant_id: str,
    token: str | None,
    expected_vm_uuid: str | None = None,
    expected_module: str | None = None,
) -> ResolvedLease:
    """Validate a bearer lease token against its persisted record.

    Every handler that acts on a lease token goes through here. The token
    must verify, map to a lease of the same tenant, equal the token stored at
    issuance, still be active and unexpired, and (when given) match the
    expected VM and module.
    """
    payload = config.codec().verify(token)
    presented = str(token or "").strip()

    lease_id = str(payload.get("jti") or "").strip()
    if not lease_id:
        raise LicenseError(401, "UNAUTHORIZED", "lease_token does not contain jti")

    lease = await leases_repo.get_lease(session, tenant_id=tenant_id, lease_id=lease_id)
    if lease is None:
        raise LicenseError(404, "LEASE_NOT_FOUND", "Execution lease not found")

    # A token can still verify after a secret rotation; the stored copy is authoritative.
    stored = str(lease.token or "").strip()
    if stored and stored != presented:
        logger.warning("lease_token_mismatch tenant_id=%s lease_id=%s", tenant_id, lease_id)
        raise LicenseError(401, "UNAUTHORIZED", "Execution lease token mismatch")

    lease_tenant = str(lease.tenant_id or "").strip() or tenant_id
    if lease_tenant != tenant_id:
        raise LicenseError(403, "FORBIDDEN", "Execution lease tenant mismatch")

    if lease.status != "active":
        raise LicenseError(409, "LEASE_INACTIVE", "Execution lease is not active")

    expires_at_ms = int(lease.expires_at_ms or 0) or _payload_expiry_ms(payload)
    if expires_at_ms <= clock.now_ms():
        raise LicenseError(409, "LEASE_EXPIRED", "Execution lease is expired")

    lease_vm_uuid = normalize_vm_uuid(lease.vm_uuid or payload.get("vm_uuid"))
    if expected_vm_uuid and lease_vm_uuid != normalize_vm_uuid(expected_vm_uuid):
        raise LicenseError(403, "VM_UUID_MISMATCH", "Execution lease vm_uuid mismatch")

    lease_module = str(lease.module or payload.get("module") or "").strip()
    if expected_module:
        if not lease_module or lease_module != str(expected_module).strip():
            raise LicenseError(403, "MODULE_MISMATCH", "Execution lease module mismatch")

    return ResolvedLease(
        lease_id=lease_id,
        lease=lease,
        token_payload=payload,
        tenant_id=lease_tenant,
        user_id=str(lease.user_id or payload.get("user_id") or "").strip() or None,
        vm_uuid=lease_vm_uuid,
        module=lease_module,
        expires_at_ms=expires_at_ms,
    )
