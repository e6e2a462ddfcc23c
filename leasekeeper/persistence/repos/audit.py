from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.domain.models import AuditEvent
from leasekeeper.persistence.guards import tenant_scoped


@dataclass(frozen=True)
class AuditEventFilter:
    # Exact-match columns; None means "any".
    event_type: str | None = None
    outcome: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    # Inclusive occurred_at window.
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None

    def exact_matches(self) -> dict[str, str]:
        window = {"occurred_from", "occurred_to"}
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if item.name not in window and getattr(self, item.name)
        }


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_filter: AuditEventFilter | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    event_filter = event_filter or AuditEventFilter()
    stmt = select(AuditEvent).where(*tenant_scoped(AuditEvent, tenant_id, **event_filter.exact_matches()))
    if event_filter.occurred_from is not None:
        stmt = stmt.where(AuditEvent.occurred_at >= event_filter.occurred_from)
    if event_filter.occurred_to is not None:
        stmt = stmt.where(AuditEvent.occurred_at <= event_filter.occurred_to)
    # Newest first; id breaks ties between events recorded in the same instant.
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event(session: AsyncSession, *, tenant_id: str, event_id: int) -> AuditEvent | None:
    result = await session.execute(select(AuditEvent).where(*tenant_scoped(AuditEvent, tenant_id, id=event_id)))
    return result.scalar_one_or_none()
