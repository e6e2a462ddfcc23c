from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.domain.models import ApiKey, User


ROLE_ORDER: dict[str, int] = {
    "user": 1,
    "api": 2,
    "infra": 3,
    "admin": 4,
}

API_KEY_PREFIX = "lk_"


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"{API_KEY_PREFIX}{resolved_id}_{secret}"
    key_prefix = raw_key[:12]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)


@dataclass(frozen=True)
class IssuedApiKey:
    key_id: str
    raw_key: str
    key_prefix: str
    user_id: str
    tenant_id: str
    role: str


async def provision_api_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role: str,
    name: str | None = None,
    email: str | None = None,
) -> IssuedApiKey:
    """Create (or reuse) the user and attach a freshly generated API key.

    The raw key is only returned here; the database keeps the hash.
    """
    normalized_role = normalize_role(role)
    user = (await session.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        user = User(id=user_id, tenant_id=tenant_id, email=email, role=normalized_role, is_active=True)
        session.add(user)
    else:
        if user.tenant_id != tenant_id:
            raise ValueError(f"User {user_id} belongs to another tenant")
        user.role = normalized_role
        user.is_active = True
    # Flush the user row first so the api_keys foreign key is satisfied.
    await session.flush()

    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    session.add(
        ApiKey(
            id=key_id,
            user_id=user_id,
            tenant_id=tenant_id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=name,
        )
    )
    await session.commit()
    return IssuedApiKey(
        key_id=key_id,
        raw_key=raw_key,
        key_prefix=key_prefix,
        user_id=user_id,
        tenant_id=tenant_id,
        role=normalized_role,
    )
