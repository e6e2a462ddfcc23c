from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from leasekeeper.core.errors import ArtifactError
from leasekeeper.domain.models import ArtifactDownloadAudit, AuditEvent
from leasekeeper.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"
_REASON_INVALID_CHARS = re.compile(r"[^a-z0-9:_-]+")
_REASON_MAX_LENGTH = 120

DOWNLOAD_EVENT_SUCCESS = "resolve_success"
DOWNLOAD_EVENT_DENIED = "resolve_denied"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def normalize_audit_reason(value: str | None, fallback: str = "resolve-denied") -> str:
    # Reasons are slugs so they can be grouped in dashboards without free-text parsing.
    raw = str(value or fallback).strip().lower()
    normalized = _REASON_INVALID_CHARS.sub("-", raw)[:_REASON_MAX_LENGTH]
    return normalized or fallback


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def _persist_event(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    session.add(event)
    if commit:
        try:
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
    else:
        await session.flush()


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append a generic audit event.

    Without a session the event is written in its own short transaction.
    best_effort events only log a failed write; strict ones re-raise it.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        if session is None:
            async with SessionLocal() as audit_session:
                await _persist_event(audit_session, event, commit=True)
        else:
            await _persist_event(session, event, commit=commit)
    except SQLAlchemyError as exc:
        if not best_effort:
            logger.error("audit_event_write_failed event_type=%s request_id=%s", event_type, request_id)
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            event_type,
            request_id,
            exc_info=exc,
        )


@dataclass
class DownloadAuditDraft:
    # Mutable draft finalized exactly once per download resolution attempt.
    tenant_id: str
    module: str
    platform: str
    channel: str
    vm_uuid: str | None = None
    user_id: str | None = None
    request_ip: str | None = None
    lease_id: str | None = None
    lease_jti: str | None = None
    release_id: int | None = None
    event_type: str = DOWNLOAD_EVENT_DENIED
    result: str = "denied"
    reason: str | None = "resolve-in-progress"
    url_expires_at_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def mark_allowed(self, *, url_expires_at_ms: int, source: str) -> None:
        self.event_type = DOWNLOAD_EVENT_SUCCESS
        self.result = "allowed"
        self.reason = None
        self.url_expires_at_ms = url_expires_at_ms
        self.metadata = {"source": source}

    def mark_failed(self, *, status: int, code: str) -> None:
        self.event_type = DOWNLOAD_EVENT_DENIED
        self.result = "error" if status >= 500 else "denied"
        self.reason = normalize_audit_reason(code)
        self.metadata = {"error_code": code}


async def record_download_audit(session: AsyncSession, draft: DownloadAuditDraft) -> ArtifactDownloadAudit:
    # Unlike record_event this write is mandatory: failures surface to the caller.
    row = ArtifactDownloadAudit(
        tenant_id=draft.tenant_id,
        lease_id=draft.lease_id,
        lease_jti=draft.lease_jti,
        user_id=draft.user_id,
        vm_uuid=draft.vm_uuid,
        module=draft.module,
        platform=draft.platform,
        channel=draft.channel,
        release_id=draft.release_id,
        event_type=draft.event_type,
        result=draft.result,
        reason=draft.reason,
        request_ip=draft.request_ip,
        url_expires_at_ms=draft.url_expires_at_ms,
        metadata_json=sanitize_metadata(draft.metadata),
    )
    try:
        session.add(row)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error(
            "artifact_download_audit_write_failed tenant_id=%s lease_id=%s result=%s",
            draft.tenant_id,
            draft.lease_id,
            draft.result,
            exc_info=exc,
        )
        raise ArtifactError(
            502,
            "ARTIFACT_AUDIT_WRITE_FAILED",
            "Failed to write artifact download audit",
        ) from exc
    return row
