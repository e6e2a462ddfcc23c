from __future__ import annotations

import asyncio
import sys

from sqlalchemy import select

from leasekeeper.domain.models import (
    ArtifactAssignment,
    ArtifactRelease,
    Entitlement,
    License,
    VmRegistration,
)
from leasekeeper.persistence.db import SessionLocal


DEMO_TENANT_ID = "t1"
DEMO_USER_ID = "u1"
DEMO_VM_UUID = "vm-aaaa1111"
DEMO_LICENSE_ID = "lic-demo"
DEMO_MODULE = "winsible"
DEMO_PLATFORM = "windows"
DEMO_CHANNEL = "stable"
DEMO_RELEASE_ID = 42
DEMO_OBJECT_KEY = "winsible/windows/stable/1.0.0/winsible.zip"


async def seed_demo() -> int:
    async with SessionLocal() as session:
        vm = (
            await session.execute(
                select(VmRegistration).where(
                    VmRegistration.tenant_id == DEMO_TENANT_ID,
                    VmRegistration.vm_uuid == DEMO_VM_UUID,
                )
            )
        ).scalar_one_or_none()
        if vm is None:
            session.add(
                VmRegistration(
                    tenant_id=DEMO_TENANT_ID,
                    vm_uuid=DEMO_VM_UUID,
                    user_id=DEMO_USER_ID,
                    vm_name="demo-vm",
                    status="active",
                )
            )

        if await session.get(License, DEMO_LICENSE_ID) is None:
            session.add(
                License(
                    id=DEMO_LICENSE_ID,
                    tenant_id=DEMO_TENANT_ID,
                    user_id=DEMO_USER_ID,
                    type="perpetual",
                    status="active",
                )
            )

        entitlement = (
            await session.execute(
                select(Entitlement).where(
                    Entitlement.tenant_id == DEMO_TENANT_ID,
                    Entitlement.user_id == DEMO_USER_ID,
                )
            )
        ).scalar_one_or_none()
        if entitlement is None:
            session.add(
                Entitlement(
                    tenant_id=DEMO_TENANT_ID,
                    user_id=DEMO_USER_ID,
                    modules_json=[DEMO_MODULE],
                )
            )
        else:
            entitlement.modules_json = [DEMO_MODULE]

        if await session.get(ArtifactRelease, DEMO_RELEASE_ID) is None:
            session.add(
                ArtifactRelease(
                    id=DEMO_RELEASE_ID,
                    tenant_id=DEMO_TENANT_ID,
                    module=DEMO_MODULE,
                    platform=DEMO_PLATFORM,
                    channel=DEMO_CHANNEL,
                    version="1.0.0",
                    object_key=DEMO_OBJECT_KEY,
                    sha256="0" * 64,
                    size_bytes=1024,
                    status="active",
                    created_by="seed_demo",
                )
            )
            # Flush so the assignment FK sees the release row.
            await session.flush()

        assignment = (
            await session.execute(
                select(ArtifactAssignment).where(
                    ArtifactAssignment.tenant_id == DEMO_TENANT_ID,
                    ArtifactAssignment.module == DEMO_MODULE,
                    ArtifactAssignment.platform == DEMO_PLATFORM,
                    ArtifactAssignment.channel == DEMO_CHANNEL,
                    ArtifactAssignment.user_id.is_(None),
                )
            )
        ).scalar_one_or_none()
        if assignment is None:
            session.add(
                ArtifactAssignment(
                    tenant_id=DEMO_TENANT_ID,
                    module=DEMO_MODULE,
                    platform=DEMO_PLATFORM,
                    channel=DEMO_CHANNEL,
                    user_id=None,
                    release_id=DEMO_RELEASE_ID,
                    is_default=True,
                    created_by="seed_demo",
                )
            )
        else:
            assignment.release_id = DEMO_RELEASE_ID

        await session.commit()
    print(
        f"Seeded tenant={DEMO_TENANT_ID} user={DEMO_USER_ID} vm={DEMO_VM_UUID} "
        f"module={DEMO_MODULE} release={DEMO_RELEASE_ID}"
    )
    print(f"Upload the artifact to object key: {DEMO_OBJECT_KEY}")
    return 0


def main() -> int:
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
