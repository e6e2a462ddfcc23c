from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.domain.models import ExecutionLease
from leasekeeper.persistence.guards import tenant_scoped


async def get_lease(
    session: AsyncSession,
    *,
    tenant_id: str,
    lease_id: str,
    for_update: bool = False,
) -> ExecutionLease | None:
    # Row locks serialize heartbeat/revoke check-then-write on PostgreSQL; SQLite ignores them.
    stmt = select(ExecutionLease).where(*tenant_scoped(ExecutionLease, tenant_id, id=lease_id))
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
