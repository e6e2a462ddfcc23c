from __future__ import annotations

import logging

import pytest

from leasekeeper.core.errors import VmRegistryError
from leasekeeper.persistence.db import SessionLocal
from leasekeeper.services.vm_registry import ensure_vm_ownership, normalize_vm_uuid, register_vm
from leasekeeper.tests.utils.seed import seed_vm


def test_normalize_vm_uuid_lowercases_and_trims() -> None:
    assert normalize_vm_uuid("  VM-AAAA1111 ") == "vm-aaaa1111"


@pytest.mark.parametrize("value", [None, "", "short", "has space-1234", "x" * 129, "vm/aaaa1111"])
def test_normalize_vm_uuid_rejects_invalid(value) -> None:
    with pytest.raises(VmRegistryError) as excinfo:
        normalize_vm_uuid(value)
    assert excinfo.value.status == 400


async def test_ownership_failures() -> None:
    await seed_vm(tenant_id="t-vm", vm_uuid="vm-owned-0001", user_id="u1")
    await seed_vm(tenant_id="t-vm", vm_uuid="vm-paused-001", user_id="u1", status="paused")
    async with SessionLocal() as session:
        with pytest.raises(VmRegistryError) as excinfo:
            await ensure_vm_ownership(session, tenant_id="t-vm", user_id="u1", vm_uuid="vm-missing-01")
        assert (excinfo.value.status, excinfo.value.code) == (404, "VM_NOT_REGISTERED")

        with pytest.raises(VmRegistryError) as excinfo:
            await ensure_vm_ownership(session, tenant_id="t-vm", user_id="u1", vm_uuid="vm-paused-001")
        assert excinfo.value.code == "VM_INACTIVE"

        with pytest.raises(VmRegistryError) as excinfo:
            await ensure_vm_ownership(session, tenant_id="t-vm", user_id="u2", vm_uuid="VM-OWNED-0001")
        assert excinfo.value.code == "VM_OWNER_MISMATCH"

        vm = await ensure_vm_ownership(session, tenant_id="t-vm", user_id="u1", vm_uuid="VM-OWNED-0001")
        assert vm.vm_uuid == "vm-owned-0001"


async def test_registration_is_tenant_scoped() -> None:
    await seed_vm(tenant_id="t-other", vm_uuid="vm-owned-0001", user_id="u1")
    async with SessionLocal() as session:
        with pytest.raises(VmRegistryError) as excinfo:
            await ensure_vm_ownership(session, tenant_id="t-vm", user_id="u1", vm_uuid="vm-owned-0001")
    assert excinfo.value.code == "VM_NOT_REGISTERED"


async def test_unassigned_vm_passes_with_warning(caplog) -> None:
    await seed_vm(tenant_id="t-vm", vm_uuid="vm-shared-001", user_id=None)
    caplog.set_level(logging.WARNING, logger="leasekeeper.services.vm_registry")
    async with SessionLocal() as session:
        vm = await ensure_vm_ownership(session, tenant_id="t-vm", user_id="anyone", vm_uuid="vm-shared-001")
    assert vm.user_id is None
    assert "vm_ownership_unassigned" in caplog.text


async def test_register_creates_then_updates() -> None:
    async with SessionLocal() as session:
        vm, created = await register_vm(
            session,
            tenant_id="t-vm",
            user_id="u1",
            vm_uuid="VM-NEW-00001",
            vm_name="first",
        )
        assert created
        assert vm.vm_uuid == "vm-new-00001"

        vm, created = await register_vm(
            session,
            tenant_id="t-vm",
            user_id="u1",
            vm_uuid="vm-new-00001",
            vm_name="renamed",
            status="paused",
        )
        assert not created
        assert vm.vm_name == "renamed"
        assert vm.status == "paused"


async def test_register_claims_unassigned_but_not_owned() -> None:
    await seed_vm(tenant_id="t-vm", vm_uuid="vm-shared-001", user_id=None)
    await seed_vm(tenant_id="t-vm", vm_uuid="vm-owned-0001", user_id="u1")
    async with SessionLocal() as session:
        vm, created = await register_vm(session, tenant_id="t-vm", user_id="u2", vm_uuid="vm-shared-001")
        assert not created
        assert vm.user_id == "u2"

        with pytest.raises(VmRegistryError) as excinfo:
            await register_vm(session, tenant_id="t-vm", user_id="u2", vm_uuid="vm-owned-0001")
        assert excinfo.value.code == "VM_OWNER_MISMATCH"


async def test_register_rejects_unknown_status() -> None:
    async with SessionLocal() as session:
        with pytest.raises(VmRegistryError) as excinfo:
            await register_vm(session, tenant_id="t-vm", user_id="u1", vm_uuid="vm-new-00001", status="gone")
    assert excinfo.value.status == 400
