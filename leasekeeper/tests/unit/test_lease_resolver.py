from __future__ import annotations

import pytest
from sqlalchemy import update

from leasekeeper.core import clock
from leasekeeper.core.errors import LicenseError
from leasekeeper.domain.models import ExecutionLease
from leasekeeper.persistence.db import SessionLocal
from leasekeeper.services.lease_resolver import resolve_active_lease_by_token
from leasekeeper.services.leases import issue_execution_lease
from leasekeeper.tests.utils.seed import TEST_LEASE_CONFIG, seed_leasable


TENANT = "t-resolve"
T0_MS = 1_700_000_000_000


@pytest.fixture
def grant_factory(monkeypatch):
    monkeypatch.setattr(clock, "now_ms", lambda: T0_MS)

    async def _factory():
        await seed_leasable(tenant_id=TENANT)
        async with SessionLocal() as session:
            return await issue_execution_lease(
                session,
                config=TEST_LEASE_CONFIG,
                tenant_id=TENANT,
                user_id="u1",
                vm_uuid="vm-aaaa1111",
                agent_id="agent-1",
                runner_id="runner-1",
                module="winsible",
            )

    return _factory


async def _resolve(token, **kwargs):
    async with SessionLocal() as session:
        return await resolve_active_lease_by_token(
            session,
            config=TEST_LEASE_CONFIG,
            tenant_id=kwargs.pop("tenant_id", TENANT),
            token=token,
            **kwargs,
        )


async def test_resolves_active_lease(grant_factory) -> None:
    grant = await grant_factory()
    resolved = await _resolve(grant.token, expected_vm_uuid="VM-AAAA1111", expected_module="winsible")
    assert resolved.lease_id == grant.lease_id
    assert resolved.user_id == "u1"
    assert resolved.vm_uuid == "vm-aaaa1111"
    assert resolved.expires_at_ms == grant.expires_at


async def test_other_tenant_cannot_see_lease(grant_factory) -> None:
    grant = await grant_factory()
    with pytest.raises(LicenseError) as excinfo:
        await _resolve(grant.token, tenant_id="t-other")
    assert excinfo.value.code == "LEASE_NOT_FOUND"


async def test_token_must_match_stored_copy(grant_factory) -> None:
    grant = await grant_factory()
    async with SessionLocal() as session:
        await session.execute(
            update(ExecutionLease).where(ExecutionLease.id == grant.lease_id).values(token="rotated")
        )
        await session.commit()
    with pytest.raises(LicenseError) as excinfo:
        await _resolve(grant.token)
    assert excinfo.value.status == 401


async def test_revoked_lease_is_inactive(grant_factory) -> None:
    grant = await grant_factory()
    async with SessionLocal() as session:
        await session.execute(
            update(ExecutionLease).where(ExecutionLease.id == grant.lease_id).values(status="revoked")
        )
        await session.commit()
    with pytest.raises(LicenseError) as excinfo:
        await _resolve(grant.token)
    assert excinfo.value.code == "LEASE_INACTIVE"


async def test_stored_expiry_is_authoritative(grant_factory) -> None:
    grant = await grant_factory()
    async with SessionLocal() as session:
        await session.execute(
            update(ExecutionLease).where(ExecutionLease.id == grant.lease_id).values(expires_at_ms=T0_MS)
        )
        await session.commit()
    with pytest.raises(LicenseError) as excinfo:
        await _resolve(grant.token)
    assert excinfo.value.code == "LEASE_EXPIRED"


async def test_vm_and_module_binding(grant_factory) -> None:
    grant = await grant_factory()
    with pytest.raises(LicenseError) as excinfo:
        await _resolve(grant.token, expected_vm_uuid="vm-bbbb2222")
    assert excinfo.value.code == "VM_UUID_MISMATCH"

    with pytest.raises(LicenseError) as excinfo:
        await _resolve(grant.token, expected_module="linsible")
    assert excinfo.value.code == "MODULE_MISMATCH"


async def test_token_without_jti_is_unauthorized(monkeypatch) -> None:
    monkeypatch.setattr(clock, "now_ms", lambda: T0_MS)
    token = TEST_LEASE_CONFIG.codec().sign({"exp": T0_MS // 1000 + 60})
    with pytest.raises(LicenseError) as excinfo:
        await _resolve(token)
    assert excinfo.value.status == 401
