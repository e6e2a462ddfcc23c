from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.core.errors import VmRegistryError
from leasekeeper.domain.models import VmRegistration
from leasekeeper.persistence.repos import vms as vms_repo


logger = logging.getLogger(__name__)

VM_UUID_PATTERN = re.compile(r"^[A-Za-z0-9:_-]{8,128}$")
VM_STATUSES = {"active", "paused", "revoked"}


def normalize_vm_uuid(value: str | None) -> str:
    # Registrations and leases always carry the lower-cased form.
    normalized = str(value or "").strip()
    if not VM_UUID_PATTERN.match(normalized):
        raise VmRegistryError(400, "BAD_REQUEST", "vm_uuid is invalid", {"field": "vm_uuid"})
    return normalized.lower()


def _owner(vm: VmRegistration) -> str:
    return str(vm.user_id or "").strip()


async def resolve_vm(session: AsyncSession, *, tenant_id: str, vm_uuid: str) -> VmRegistration | None:
    return await vms_repo.get_vm(session, tenant_id=tenant_id, vm_uuid=normalize_vm_uuid(vm_uuid))


async def ensure_vm_ownership(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    vm_uuid: str,
) -> VmRegistration:
    vm = await resolve_vm(session, tenant_id=tenant_id, vm_uuid=vm_uuid)
    if vm is None:
        raise VmRegistryError(404, "VM_NOT_REGISTERED", "VM is not registered for this tenant")
    if vm.status != "active":
        raise VmRegistryError(403, "VM_INACTIVE", "VM registration is not active", {"status": vm.status})
    owner = _owner(vm)
    if not owner:
        # Unassigned registrations pass for any caller; keep this visible to operators.
        logger.warning(
            "vm_ownership_unassigned tenant_id=%s vm_uuid=%s user_id=%s",
            tenant_id,
            vm.vm_uuid,
            user_id,
        )
        return vm
    if owner != str(user_id or "").strip():
        raise VmRegistryError(403, "VM_OWNER_MISMATCH", "VM is owned by another user")
    return vm


async def register_vm(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    vm_uuid: str,
    vm_name: str | None = None,
    project_id: str | None = None,
    status: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[VmRegistration, bool]:
    """Create or update a VM registration owned by ``user_id``.

    Returns the row and whether it was newly created. An unassigned
    registration is claimed by the caller; one owned by somebody else is
    rejected with VM_OWNER_MISMATCH.
    """
    normalized_uuid = normalize_vm_uuid(vm_uuid)
    owner = str(user_id or "").strip()
    if not owner:
        raise VmRegistryError(400, "BAD_REQUEST", "user_id is required", {"field": "user_id"})
    resolved_status = str(status or "active").strip().lower()
    if resolved_status not in VM_STATUSES:
        raise VmRegistryError(400, "BAD_REQUEST", "status is invalid", {"field": "status"})

    vm = await vms_repo.get_vm(session, tenant_id=tenant_id, vm_uuid=normalized_uuid)
    created = vm is None
    if vm is None:
        vm = VmRegistration(
            tenant_id=tenant_id,
            vm_uuid=normalized_uuid,
            user_id=owner,
            vm_name=vm_name,
            project_id=project_id,
            status=resolved_status,
            metadata_json=metadata or {},
        )
        session.add(vm)
    else:
        current_owner = _owner(vm)
        if current_owner and current_owner != owner:
            raise VmRegistryError(403, "VM_OWNER_MISMATCH", "VM is owned by another user")
        vm.user_id = owner
        if vm_name is not None:
            vm.vm_name = vm_name
        if project_id is not None:
            vm.project_id = project_id
        vm.status = resolved_status
        if metadata is not None:
            vm.metadata_json = metadata

    try:
        await session.commit()
    except IntegrityError as exc:
        # A concurrent registration of the same uuid won the insert.
        await session.rollback()
        raise VmRegistryError(409, "VM_ALREADY_REGISTERED", "VM registration changed concurrently") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise VmRegistryError(500, "DB_ERROR", "Failed to register VM") from exc
    await session.refresh(vm)
    logger.info(
        "vm_registered tenant_id=%s vm_uuid=%s user_id=%s created=%s",
        tenant_id,
        normalized_uuid,
        owner,
        created,
    )
    return vm, created
