from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.core import clock
from leasekeeper.core.errors import LicenseError
from leasekeeper.domain.models import License
from leasekeeper.persistence.repos import licenses as licenses_repo


# License types that never expire on their own.
NON_EXPIRING_LICENSE_TYPES = {"perpetual", "alltime"}
ALL_MODULES = "*"


@dataclass(frozen=True)
class ModuleEntitlements:
    # Single evaluation shape for both list and mapping entitlement payloads.
    allowed: frozenset[str]
    allow_all: bool = False

    def permits(self, module: str) -> bool:
        return self.allow_all or module in self.allowed


def normalize_module_entitlements(modules: Any) -> ModuleEntitlements | None:
    """Collapse the stored ``modules`` payload into a ``ModuleEntitlements``.

    Lists contribute every non-empty string entry. Mappings contribute keys
    whose value is exactly ``True``. The ``"*"`` entry in either shape grants
    every module. Any other shape returns ``None``.
    """
    if isinstance(modules, (list, tuple)):
        names = {str(item).strip() for item in modules if isinstance(item, str) and item.strip()}
    elif isinstance(modules, Mapping):
        names = {str(key).strip() for key, value in modules.items() if value is True and str(key).strip()}
    else:
        return None
    allow_all = ALL_MODULES in names
    names.discard(ALL_MODULES)
    return ModuleEntitlements(allowed=frozenset(names), allow_all=allow_all)


def is_license_active(license_row: License, *, now_ms: int | None = None) -> bool:
    # Expiry is evaluated at read time; nothing flips status in the background.
    if str(license_row.status or "").lower() != "active":
        return False
    if str(license_row.type or "").lower() in NON_EXPIRING_LICENSE_TYPES:
        return True
    current = clock.now_ms() if now_ms is None else now_ms
    return license_row.expires_at_ms is not None and int(license_row.expires_at_ms) > current


async def ensure_active_license(session: AsyncSession, *, tenant_id: str, user_id: str) -> License:
    now = clock.now_ms()
    for license_row in await licenses_repo.list_licenses(session, tenant_id=tenant_id):
        owner = str(license_row.user_id or "").strip()
        if owner and owner != user_id:
            continue
        if is_license_active(license_row, now_ms=now):
            return license_row
    raise LicenseError(403, "LICENSE_INACTIVE", "No active license for this user")


async def ensure_entitlement(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    module: str,
) -> ModuleEntitlements:
    normalized_module = str(module or "").strip()
    if not normalized_module:
        raise LicenseError(400, "BAD_REQUEST", "module is required", {"field": "module"})
    entitlement = await licenses_repo.get_entitlement(session, tenant_id=tenant_id, user_id=user_id)
    entitlements = normalize_module_entitlements(entitlement.modules_json) if entitlement else None
    if entitlements is None:
        raise LicenseError(403, "ENTITLEMENT_REQUIRED", "No module entitlement for this user")
    if not entitlements.permits(normalized_module):
        raise LicenseError(
            403,
            "MODULE_NOT_ALLOWED",
            "Module is not included in the user's entitlement",
            {"module": normalized_module},
        )
    return entitlements
