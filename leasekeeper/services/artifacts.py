from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leasekeeper.core.errors import ArtifactError
from leasekeeper.domain.models import ArtifactAssignment, ArtifactRelease
from leasekeeper.persistence.repos import artifacts as artifacts_repo


logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "stable"
RELEASE_STATUS_ACTIVE = "active"
RELEASE_STATUSES = ("draft", "active", "disabled", "archived")
_SHA256_PATTERN = re.compile(r"^[a-f0-9]{64}$")


@dataclass(frozen=True)
class ArtifactScope:
    module: str
    platform: str
    channel: str


@dataclass(frozen=True)
class EffectiveAssignment:
    user_assignment: ArtifactAssignment | None
    default_assignment: ArtifactAssignment | None
    effective_assignment: ArtifactAssignment | None

    @property
    def source(self) -> str | None:
        if self.effective_assignment is None:
            return None
        return "user" if self.effective_assignment is self.user_assignment else "tenant-default"


def _bad_request(message: str, field: str) -> ArtifactError:
    return ArtifactError(400, "BAD_REQUEST", message, {"field": field})


def normalize_text(
    value: Any,
    *,
    field: str,
    required: bool = True,
    max_length: int = 200,
    lowercase: bool = False,
) -> str:
    raw = str(value if value is not None else "").strip()
    if not raw:
        if not required:
            return ""
        raise _bad_request(f"{field} is required", field)
    if len(raw) > max_length:
        raise _bad_request(f"{field} exceeds maximum length", field)
    return raw.lower() if lowercase else raw


def normalize_scope(module: Any, platform: Any, channel: Any = None) -> ArtifactScope:
    return ArtifactScope(
        module=normalize_text(module, field="module", max_length=200),
        platform=normalize_text(platform, field="platform", max_length=100, lowercase=True),
        channel=normalize_text(channel or DEFAULT_CHANNEL, field="channel", max_length=100, lowercase=True),
    )


def _optional_user(value: Any) -> str | None:
    return normalize_text(value, field="user_id", required=False, max_length=200) or None


def _normalize_sha256(value: Any) -> str:
    normalized = normalize_text(value, field="sha256", max_length=64, lowercase=True)
    if not _SHA256_PATTERN.match(normalized):
        raise _bad_request("sha256 must be 64 hex chars", "sha256")
    return normalized


def _positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise _bad_request(f"{field} must be a positive integer", field)
    try:
        parsed = int(str(value).strip()) if not isinstance(value, int) else value
    except (TypeError, ValueError):
        raise _bad_request(f"{field} must be a positive integer", field) from None
    if parsed <= 0:
        raise _bad_request(f"{field} must be a positive integer", field)
    return parsed


def _normalize_release_status(value: Any) -> str:
    normalized = normalize_text(value or RELEASE_STATUS_ACTIVE, field="status", max_length=20, lowercase=True)
    if normalized not in RELEASE_STATUSES:
        raise _bad_request("status must be one of draft|active|disabled|archived", "status")
    return normalized


async def create_release(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None,
    payload: Mapping[str, Any],
) -> ArtifactRelease:
    scope = normalize_scope(payload.get("module"), payload.get("platform"), payload.get("channel"))
    actor = _optional_user(actor_id)
    release = ArtifactRelease(
        tenant_id=tenant_id,
        module=scope.module,
        platform=scope.platform,
        channel=scope.channel,
        version=normalize_text(payload.get("version"), field="version", max_length=100),
        object_key=normalize_text(payload.get("object_key"), field="object_key", max_length=1024),
        sha256=_normalize_sha256(payload.get("sha256")),
        size_bytes=_positive_int(payload.get("size_bytes"), "size_bytes"),
        status=_normalize_release_status(payload.get("status")),
        created_by=actor,
        updated_by=actor,
    )
    try:
        session.add(release)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise ArtifactError(500, "DB_ERROR", "Failed to create artifact release") from exc
    await session.refresh(release)
    logger.info(
        "artifact_release_created tenant_id=%s release_id=%s module=%s platform=%s channel=%s version=%s",
        tenant_id,
        release.id,
        release.module,
        release.platform,
        release.channel,
        release.version,
    )
    return release


async def find_release(session: AsyncSession, *, tenant_id: str, release_id: int) -> ArtifactRelease | None:
    return await artifacts_repo.get_release(session, tenant_id=tenant_id, release_id=release_id)


async def get_effective_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str | None,
    module: str,
    platform: str,
    channel: str | None = None,
) -> EffectiveAssignment:
    scope = normalize_scope(module, platform, channel)
    normalized_user = _optional_user(user_id)

    user_assignment = None
    if normalized_user:
        user_assignment = await artifacts_repo.get_user_assignment(
            session,
            tenant_id=tenant_id,
            module=scope.module,
            platform=scope.platform,
            channel=scope.channel,
            user_id=normalized_user,
        )
    default_assignment = await artifacts_repo.get_default_assignment(
        session,
        tenant_id=tenant_id,
        module=scope.module,
        platform=scope.platform,
        channel=scope.channel,
    )
    # A per-user assignment always overrides the tenant default.
    return EffectiveAssignment(
        user_assignment=user_assignment,
        default_assignment=default_assignment,
        effective_assignment=user_assignment or default_assignment,
    )


async def upsert_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None,
    payload: Mapping[str, Any],
) -> ArtifactAssignment:
    scope = normalize_scope(payload.get("module"), payload.get("platform"), payload.get("channel"))
    release_id = _positive_int(payload.get("release_id"), "release_id")
    user_id = _optional_user(payload.get("user_id"))
    actor = _optional_user(actor_id)

    release = await find_release(session, tenant_id=tenant_id, release_id=release_id)
    if release is None:
        raise ArtifactError(404, "NOT_FOUND", "artifact release not found", {"release_id": release_id})
    if (
        str(release.module).lower() != scope.module.lower()
        or str(release.platform).lower() != scope.platform
        or str(release.channel).lower() != scope.channel
    ):
        raise ArtifactError(
            409,
            "ARTIFACT_SCOPE_MISMATCH",
            "release scope does not match assignment scope",
            {"release_id": release_id},
        )

    assignment = ArtifactAssignment(
        tenant_id=tenant_id,
        module=scope.module,
        platform=scope.platform,
        channel=scope.channel,
        user_id=user_id,
        release_id=release_id,
        is_default=user_id is None,
        created_by=actor,
        updated_by=actor,
    )
    # Delete and insert share one transaction so a scope never ends up empty or doubled.
    try:
        replaced = await artifacts_repo.delete_assignments(
            session,
            tenant_id=tenant_id,
            module=scope.module,
            platform=scope.platform,
            channel=scope.channel,
            user_id=user_id,
        )
        session.add(assignment)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise ArtifactError(500, "DB_ERROR", "Failed to write artifact assignment") from exc
    await session.refresh(assignment)
    logger.info(
        "artifact_assignment_upserted tenant_id=%s module=%s platform=%s channel=%s user_id=%s release_id=%s replaced=%s",
        tenant_id,
        scope.module,
        scope.platform,
        scope.channel,
        user_id,
        release_id,
        replaced,
    )
    return assignment
