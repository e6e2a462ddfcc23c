from __future__ import annotations

from uuid import uuid4

from leasekeeper.persistence.db import SessionLocal
from leasekeeper.services.auth.api_keys import provision_api_key


async def create_test_api_key(
    *,
    tenant_id: str,
    role: str,
    user_id: str | None = None,
    name: str = "test-key",
) -> tuple[str, dict[str, str], str]:
    # Provision a user + API key pair and return (raw_key, headers, user_id).
    async with SessionLocal() as session:
        issued = await provision_api_key(
            session,
            tenant_id=tenant_id,
            user_id=user_id or uuid4().hex,
            role=role,
            name=name,
        )
    headers = {"Authorization": f"Bearer {issued.raw_key}"}
    return issued.raw_key, headers, issued.user_id


def dev_headers(tenant_id: str, user_id: str, role: str = "user") -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id, "X-User-Id": user_id, "X-Role": role}
