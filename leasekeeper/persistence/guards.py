from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from leasekeeper.core.config import get_settings


@dataclass(eq=False)
class TenantPredicateError(RuntimeError):
    # Raised when a query against a tenant-owned table is built without a tenant id.
    message: str
    model: str | None = None


def require_tenant_id(tenant_id: str | None, *, model: str | None = None) -> None:
    if not get_settings().authz_require_tenant_predicate:
        return
    if not tenant_id or not tenant_id.strip():
        target = f" for {model}" if model else ""
        raise TenantPredicateError(f"tenant_id is required{target}", model)


def tenant_predicate(model, tenant_id: str) -> object:
    """Return the tenant filter for a tenant-owned model.

    Every repo query goes through here so a missing tenant id fails loudly
    instead of silently widening the query to all tenants.
    """
    require_tenant_id(tenant_id, model=getattr(model, "__tablename__", None))
    return model.tenant_id == tenant_id


def tenant_scoped(model, tenant_id: str, **equals: Any) -> list[object]:
    # Tenant filter plus exact-match column filters, e.g. vm_uuid=... or id=...
    filters: list[object] = [tenant_predicate(model, tenant_id)]
    for column, value in equals.items():
        filters.append(getattr(model, column) == value)
    return filters
