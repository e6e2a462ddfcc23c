from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.domain.models import VmRegistration
from leasekeeper.persistence.guards import tenant_scoped


async def get_vm(session: AsyncSession, *, tenant_id: str, vm_uuid: str) -> VmRegistration | None:
    # vm_uuid must already be normalized; registrations are stored lower-cased.
    result = await session.execute(
        select(VmRegistration).where(*tenant_scoped(VmRegistration, tenant_id, vm_uuid=vm_uuid))
    )
    return result.scalar_one_or_none()
