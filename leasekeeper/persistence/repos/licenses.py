from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.domain.models import Entitlement, License
from leasekeeper.persistence.guards import tenant_predicate, tenant_scoped


async def list_licenses(session: AsyncSession, *, tenant_id: str) -> list[License]:
    # Stable ordering keeps "first active license" deterministic across calls.
    result = await session.execute(
        select(License)
        .where(tenant_predicate(License, tenant_id))
        .order_by(License.created_at, License.id)
    )
    return list(result.scalars().all())


async def get_entitlement(session: AsyncSession, *, tenant_id: str, user_id: str) -> Entitlement | None:
    result = await session.execute(
        select(Entitlement).where(*tenant_scoped(Entitlement, tenant_id, user_id=user_id))
    )
    return result.scalar_one_or_none()
