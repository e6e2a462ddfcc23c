from __future__ import annotations

import pytest
from sqlalchemy import select

from leasekeeper.core import clock
from leasekeeper.core.config import MIN_LEASE_TTL_SECONDS, Settings
from leasekeeper.core.errors import LicenseError, VmRegistryError
from leasekeeper.domain.models import ExecutionLease
from leasekeeper.persistence.db import SessionLocal
from leasekeeper.services.leases import (
    LeaseConfig,
    heartbeat_lease,
    issue_execution_lease,
    revoke_lease,
)
from leasekeeper.tests.utils.seed import TEST_LEASE_CONFIG, seed_leasable, seed_vm


TENANT = "t-lease"
T0_MS = 1_700_000_000_000


class _Clock:
    def __init__(self, now_ms: int) -> None:
        self.now = now_ms

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def fake_clock(monkeypatch) -> _Clock:
    fake = _Clock(T0_MS)
    monkeypatch.setattr(clock, "now_ms", fake)
    return fake


async def _issue(session, **overrides):
    params = {
        "config": TEST_LEASE_CONFIG,
        "tenant_id": TENANT,
        "user_id": "u1",
        "vm_uuid": "vm-aaaa1111",
        "agent_id": "agent-1",
        "runner_id": "runner-1",
        "module": "winsible",
    }
    params.update(overrides)
    return await issue_execution_lease(session, **params)


def test_config_clamps_short_ttl() -> None:
    config = LeaseConfig.from_settings(Settings(license_lease_secret="x", license_lease_ttl_seconds=5))
    assert config.ttl_seconds == MIN_LEASE_TTL_SECONDS


async def test_issue_persists_lease_and_signs_token(fake_clock) -> None:
    await seed_leasable(tenant_id=TENANT)
    async with SessionLocal() as session:
        grant = await _issue(session, vm_uuid="VM-AAAA1111", version="2.1")

    assert grant.expires_at == T0_MS + 300_000
    assert grant.vm_uuid == "vm-aaaa1111"
    payload = TEST_LEASE_CONFIG.codec().verify(grant.token)
    assert payload["jti"] == grant.lease_id
    assert payload["sub"] == "runner-1"
    assert payload["exp"] == T0_MS // 1000 + 300
    assert payload["version"] == "2.1"

    async with SessionLocal() as session:
        lease = (await session.execute(select(ExecutionLease))).scalar_one()
    assert lease.token == grant.token
    assert lease.status == "active"
    assert lease.last_heartbeat_at_ms == T0_MS
    assert lease.vm_name == "build-vm"


@pytest.mark.parametrize("field", ["user_id", "agent_id", "runner_id", "module"])
async def test_issue_requires_identity_fields(field, fake_clock) -> None:
    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await _issue(session, **{field: "  "})
    assert excinfo.value.status == 400
    assert excinfo.value.details == {"field": field}


async def test_issue_checks_ownership_license_and_entitlement(fake_clock) -> None:
    async with SessionLocal() as session:
        with pytest.raises(VmRegistryError) as excinfo:
            await _issue(session)
        assert excinfo.value.code == "VM_NOT_REGISTERED"

    await seed_vm(tenant_id=TENANT, vm_uuid="vm-aaaa1111", user_id="u1")
    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await _issue(session)
        assert excinfo.value.code == "LICENSE_INACTIVE"

    await seed_leasable(tenant_id=TENANT, vm_uuid="vm-bbbb2222", modules=["linsible"])
    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await _issue(session, vm_uuid="vm-bbbb2222")
        assert excinfo.value.code == "MODULE_NOT_ALLOWED"


async def test_issue_without_secret_is_config_error(fake_clock) -> None:
    await seed_leasable(tenant_id=TENANT)
    config = LeaseConfig(secret=None, ttl_seconds=300, issuer="leasekeeper-license")
    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await _issue(session, config=config)
    assert excinfo.value.code == "CONFIG_ERROR"


async def test_heartbeat_never_extends_expiry(fake_clock) -> None:
    await seed_leasable(tenant_id=TENANT)
    async with SessionLocal() as session:
        grant = await _issue(session)

    fake_clock.now = T0_MS + 30_000
    async with SessionLocal() as session:
        result = await heartbeat_lease(session, tenant_id=TENANT, lease_id=grant.lease_id, user_id="u1")
    assert result.status == "active"
    assert result.expires_at == grant.expires_at
    assert result.last_heartbeat_at == T0_MS + 30_000


async def test_heartbeat_rejections(fake_clock) -> None:
    await seed_leasable(tenant_id=TENANT)
    async with SessionLocal() as session:
        grant = await _issue(session)

    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await heartbeat_lease(session, tenant_id=TENANT, lease_id="missing", user_id="u1")
        assert excinfo.value.code == "LEASE_NOT_FOUND"

        with pytest.raises(LicenseError) as excinfo:
            await heartbeat_lease(session, tenant_id="t-elsewhere", lease_id=grant.lease_id, user_id="u1")
        assert excinfo.value.code == "LEASE_NOT_FOUND"

        with pytest.raises(LicenseError) as excinfo:
            await heartbeat_lease(session, tenant_id=TENANT, lease_id=grant.lease_id, user_id="u2")
        assert excinfo.value.code == "LEASE_OWNER_MISMATCH"

    fake_clock.now = grant.expires_at
    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await heartbeat_lease(session, tenant_id=TENANT, lease_id=grant.lease_id, user_id="u1")
    assert excinfo.value.code == "LEASE_EXPIRED"


async def test_revoke_then_heartbeat_is_inactive(fake_clock) -> None:
    await seed_leasable(tenant_id=TENANT)
    async with SessionLocal() as session:
        grant = await _issue(session)

    fake_clock.now = T0_MS + 5_000
    async with SessionLocal() as session:
        revoked = await revoke_lease(
            session,
            tenant_id=TENANT,
            lease_id=grant.lease_id,
            actor_id="ops",
            reason="maintenance",
        )
    assert revoked.status == "revoked"
    assert revoked.revoked_at == T0_MS + 5_000

    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await heartbeat_lease(session, tenant_id=TENANT, lease_id=grant.lease_id, user_id="u1")
    assert excinfo.value.status == 409
    assert excinfo.value.code == "LEASE_INACTIVE"


async def test_revoke_is_idempotent(fake_clock) -> None:
    await seed_leasable(tenant_id=TENANT)
    async with SessionLocal() as session:
        grant = await _issue(session)
        first = await revoke_lease(session, tenant_id=TENANT, lease_id=grant.lease_id, actor_id="ops")

    fake_clock.now = T0_MS + 60_000
    async with SessionLocal() as session:
        second = await revoke_lease(session, tenant_id=TENANT, lease_id=grant.lease_id, actor_id="other")
        lease = (await session.execute(select(ExecutionLease))).scalar_one()
    assert second.revoked_at == first.revoked_at
    assert lease.revoked_by == "ops"


async def test_revoke_unknown_lease_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(LicenseError) as excinfo:
            await revoke_lease(session, tenant_id=TENANT, lease_id="missing", actor_id="ops")
    assert excinfo.value.status == 404
