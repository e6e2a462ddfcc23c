from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.domain.models import ArtifactAssignment, ArtifactDownloadAudit, ArtifactRelease
from leasekeeper.persistence.guards import tenant_predicate, tenant_scoped


async def get_release(session: AsyncSession, *, tenant_id: str, release_id: int) -> ArtifactRelease | None:
    result = await session.execute(
        select(ArtifactRelease).where(*tenant_scoped(ArtifactRelease, tenant_id, id=release_id))
    )
    return result.scalar_one_or_none()


def _scope_filters(*, tenant_id: str, module: str, platform: str, channel: str, user_id: str | None) -> list:
    filters = [
        tenant_predicate(ArtifactAssignment, tenant_id),
        # Module keeps its display casing but matches case-insensitively.
        func.lower(ArtifactAssignment.module) == module.lower(),
        ArtifactAssignment.platform == platform,
        ArtifactAssignment.channel == channel,
    ]
    if user_id:
        filters.append(ArtifactAssignment.user_id == user_id)
    else:
        filters.append(ArtifactAssignment.user_id.is_(None))
    return filters


async def get_user_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    module: str,
    platform: str,
    channel: str,
    user_id: str,
) -> ArtifactAssignment | None:
    result = await session.execute(
        select(ArtifactAssignment)
        .where(
            *_scope_filters(
                tenant_id=tenant_id,
                module=module,
                platform=platform,
                channel=channel,
                user_id=user_id,
            )
        )
        .order_by(ArtifactAssignment.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_default_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    module: str,
    platform: str,
    channel: str,
) -> ArtifactAssignment | None:
    result = await session.execute(
        select(ArtifactAssignment)
        .where(
            *_scope_filters(
                tenant_id=tenant_id,
                module=module,
                platform=platform,
                channel=channel,
                user_id=None,
            ),
            ArtifactAssignment.is_default.is_(True),
        )
        .order_by(ArtifactAssignment.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def delete_assignments(
    session: AsyncSession,
    *,
    tenant_id: str,
    module: str,
    platform: str,
    channel: str,
    user_id: str | None,
) -> int:
    # Clear every row for the exact scope key; the caller inserts the replacement in the same transaction.
    result = await session.execute(
        delete(ArtifactAssignment).where(
            *_scope_filters(
                tenant_id=tenant_id,
                module=module,
                platform=platform,
                channel=channel,
                user_id=user_id,
            )
        )
    )
    return int(result.rowcount or 0)


async def list_download_audit(
    session: AsyncSession,
    *,
    tenant_id: str,
    lease_id: str | None = None,
    result: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ArtifactDownloadAudit]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(ArtifactDownloadAudit).where(tenant_predicate(ArtifactDownloadAudit, tenant_id))
    if lease_id:
        stmt = stmt.where(ArtifactDownloadAudit.lease_id == lease_id)
    if result:
        stmt = stmt.where(ArtifactDownloadAudit.result == result)
    stmt = stmt.order_by(ArtifactDownloadAudit.id.desc()).offset(offset).limit(limit)
    rows = await session.execute(stmt)
    return list(rows.scalars().all())
