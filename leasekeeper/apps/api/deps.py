from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator
import asyncio
import ipaddress
import logging
import time

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.core.config import get_settings
from leasekeeper.core.errors import StorageError
from leasekeeper.domain.models import ApiKey, User
from leasekeeper.persistence.db import SessionLocal, get_session
from leasekeeper.providers.storage.base import StorageProvider, UnavailableStorageProvider
from leasekeeper.providers.storage.factory import get_storage_provider
from leasekeeper.services.auth.api_keys import hash_api_key, normalize_role, role_allows
from leasekeeper.services.audit import get_request_context, record_event
from leasekeeper.services.leases import LeaseConfig


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Capture the authenticated identity used for tenant scoping and RBAC.
    subject_id: str
    tenant_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def reset_auth_cache() -> None:
    # Clear cached principals for deterministic tests.
    _auth_cache.clear()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "FORBIDDEN", "message": message},
    )


def _extract_error_code(exc: HTTPException) -> str | None:
    detail = exc.detail
    if isinstance(detail, dict):
        return detail.get("code")
    return None


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


class _AuthDenied(Exception):
    # Carries an auth failure plus the audit context it should be recorded with.
    def __init__(
        self,
        error: HTTPException,
        *,
        actor_type: str = "anonymous",
        event_type: str = "auth.access.failure",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error.detail)
        self.error = error
        self.actor_type = actor_type
        self.event_type = event_type
        self.context = context or {}


async def _record_auth_event(
    db: AsyncSession,
    request: Request,
    *,
    event_type: str,
    outcome: str,
    actor_type: str,
    tenant_id: str | None = None,
    actor_id: str | None = None,
    actor_role: str | None = None,
    metadata: dict[str, Any] | None = None,
    error: HTTPException | None = None,
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type="auth",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={**_request_metadata(request), **(metadata or {})},
        error_code=_extract_error_code(error) if error is not None else None,
        commit=True,
        best_effort=True,
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    if ttl_s <= 0:
        return None
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if entry is None:
            return None
        expires_at, principal = entry
        if expires_at <= time.monotonic():
            del _auth_cache[key_hash]
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.monotonic() + ttl_s, principal)


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise _AuthDenied(_auth_error("Missing or invalid bearer token"))
    return token


def _principal_from_dev_headers(request: Request) -> Principal:
    # Header-declared identity; only reachable when AUTH_DEV_BYPASS is on.
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise _AuthDenied(_auth_error("X-Tenant-Id header is required in dev bypass mode"))
    try:
        role = normalize_role(request.headers.get("X-Role", "admin"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    subject_id = (request.headers.get("X-User-Id") or "").strip() or f"dev-{tenant_id}"
    return Principal(
        subject_id=subject_id,
        tenant_id=tenant_id,
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def reject_tenant_id_in_body(request: Request) -> None:
    # Tenancy comes from the credential; a body-supplied tenant_id is refused outright.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if isinstance(payload, dict) and "tenant_id" in payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "TENANT_ID_NOT_ALLOWED",
                "message": "tenant_id is bound to the caller's credential",
            },
        )


async def _touch_last_used(api_key_id: str) -> None:
    # Runs in its own session so a failed touch never affects the request transaction.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=func.now())
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.debug("api_key_touch_failed api_key_id=%s", api_key_id)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; stored values are UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _principal_from_api_key(db: AsyncSession, key_hash: str) -> Principal:
    try:
        result = await db.execute(
            select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        error = HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        )
        raise _AuthDenied(error, actor_type="system") from exc

    row = result.first()
    if row is None:
        raise _AuthDenied(_auth_error("Invalid API key"))
    api_key, user = row
    context = {
        "tenant_id": api_key.tenant_id,
        "actor_id": api_key.id,
        "actor_role": user.role,
        "metadata": {"user_id": user.id},
    }
    if api_key.revoked_at is not None or not user.is_active:
        raise _AuthDenied(_auth_error("API key is revoked or inactive"), actor_type="api_key", context=context)
    expires_at = _as_utc(api_key.expires_at)
    if expires_at is not None and expires_at <= datetime.now(timezone.utc):
        raise _AuthDenied(
            _auth_error("API key expired"),
            actor_type="api_key",
            event_type="auth.api_key.expired",
            context=context,
        )
    if api_key.tenant_id != user.tenant_id:
        raise _AuthDenied(_forbidden_error("Tenant mismatch for API key"), actor_type="api_key", context=context)
    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        raise _AuthDenied(_forbidden_error(str(exc)), actor_type="api_key", context=context) from exc

    asyncio.create_task(_touch_last_used(api_key.id))
    return Principal(
        subject_id=user.id,
        tenant_id=user.tenant_id,
        role=role,
        api_key_id=api_key.id,
        auth_method="api_key",
    )


async def _authenticate(request: Request, db: AsyncSession) -> tuple[Principal, dict[str, Any]]:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request), {"auth_mode": "dev_bypass"}
        if not settings.auth_enabled:
            raise _AuthDenied(_auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access"))
        raise _AuthDenied(_auth_error("Missing API key"))

    key_hash = hash_api_key(bearer_token)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached is not None:
        return cached, {"auth_cache": True}
    principal = await _principal_from_api_key(db, key_hash)
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    return principal, {"user_id": principal.subject_id}


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Resolve the caller from a bearer API key, or from dev headers when bypass is on.

    Every outcome is written to the generic audit trail; audit failures never
    block the request.
    """
    try:
        principal, metadata = await _authenticate(request, db)
    except _AuthDenied as denied:
        await _record_auth_event(
            db,
            request,
            event_type=denied.event_type,
            outcome="failure",
            actor_type=denied.actor_type,
            error=denied.error,
            **denied.context,
        )
        raise denied.error from denied.__cause__
    await _record_auth_event(
        db,
        request,
        event_type="auth.access.success",
        outcome="success",
        actor_type="system" if principal.auth_method == "dev_bypass" else "api_key",
        tenant_id=principal.tenant_id,
        actor_id=principal.subject_id if principal.auth_method == "dev_bypass" else principal.api_key_id,
        actor_role=principal.role,
        metadata=metadata,
    )
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            # Log RBAC denials before raising a 403 response.
            request_ctx = get_request_context(request)
            await record_event(
                session=db,
                tenant_id=principal.tenant_id,
                actor_type=principal.auth_method,
                actor_id=principal.api_key_id,
                actor_role=principal.role,
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="rbac",
                request_id=request_ctx["request_id"],
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
                metadata={**_request_metadata(request), "required_role": minimum_role},
                error_code="FORBIDDEN",
                commit=True,
                best_effort=True,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def get_lease_config() -> LeaseConfig:
    return LeaseConfig.from_settings()


def get_storage() -> StorageProvider:
    # Misconfiguration is reported by the first storage call so it lands in the download audit.
    try:
        return get_storage_provider()
    except StorageError as exc:
        logger.warning("storage_provider_unavailable code=%s message=%s", exc.code, exc.message)
        return UnavailableStorageProvider(exc)


def client_ip(request: Request) -> str | None:
    # First X-Forwarded-For hop wins when it parses as an IP; otherwise the socket peer.
    forwarded = request.headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        try:
            return str(ipaddress.ip_address(first))
        except ValueError:
            logger.debug("forwarded_for_ignored length=%s", len(first))
    return request.client.host if request.client else None
