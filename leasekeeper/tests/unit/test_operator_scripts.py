from __future__ import annotations

import argparse

from sqlalchemy import func, select

from leasekeeper.domain.models import (
    ApiKey,
    ArtifactAssignment,
    ArtifactRelease,
    AuditEvent,
    Entitlement,
    License,
    VmRegistration,
)
from leasekeeper.persistence.db import SessionLocal
from scripts.create_api_key import _create_key
from scripts.seed_demo import DEMO_RELEASE_ID, seed_demo


async def _count(model) -> int:
    async with SessionLocal() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def test_create_api_key_script_emits_audit_event(capsys) -> None:
    args = argparse.Namespace(tenant="t-script", role="infra", name="ci", user_id="ops", email=None)
    assert await _create_key(args) == 0
    assert "lk_" in capsys.readouterr().out

    async with SessionLocal() as session:
        key = (await session.execute(select(ApiKey))).scalar_one()
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "auth.api_key.created"))
        ).scalar_one()
    assert key.user_id == "ops"
    assert event.resource_id == key.id


async def test_seed_demo_is_idempotent() -> None:
    assert await seed_demo() == 0
    assert await seed_demo() == 0

    for model in (VmRegistration, License, Entitlement, ArtifactRelease, ArtifactAssignment):
        assert await _count(model) == 1
    async with SessionLocal() as session:
        assignment = (await session.execute(select(ArtifactAssignment))).scalar_one()
    assert assignment.release_id == DEMO_RELEASE_ID
    assert assignment.user_id is None
