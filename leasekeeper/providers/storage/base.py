from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from leasekeeper.core.errors import StorageError


MIN_PRESIGN_TTL_SECONDS = 60
MAX_PRESIGN_TTL_SECONDS = 300
DEFAULT_PRESIGN_TTL_SECONDS = 300


@dataclass(frozen=True)
class ObjectHead:
    exists: bool
    object_key: str
    content_length: int | None = None
    etag: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PresignedUrl:
    url: str
    object_key: str
    expires_in_seconds: int
    expires_at_ms: int


@dataclass(frozen=True)
class StorageReadiness:
    ready: bool
    reason: str | None = None


class StorageProvider(Protocol):
    async def head_object(self, object_key: str) -> ObjectHead:
        ...

    async def create_presigned_download_url(
        self,
        object_key: str,
        expires_in_seconds: int | None = None,
    ) -> PresignedUrl:
        ...

    async def probe_readiness(self) -> StorageReadiness:
        ...


def normalize_object_key(value: str | None) -> str:
    # Keys are bucket-relative; traversal segments never reach the backend.
    normalized = str(value or "").strip().lstrip("/")
    if not normalized:
        raise StorageError(400, "BAD_REQUEST", "object_key is required")
    if ".." in normalized or "//" in normalized:
        raise StorageError(400, "BAD_REQUEST", "object_key contains invalid path traversal")
    return normalized


def clamp_presign_ttl(value: int | None, default: int = DEFAULT_PRESIGN_TTL_SECONDS) -> int:
    try:
        requested = int(value) if value is not None else int(default)
    except (TypeError, ValueError):
        requested = int(default)
    return max(MIN_PRESIGN_TTL_SECONDS, min(MAX_PRESIGN_TTL_SECONDS, requested))


class UnavailableStorageProvider:
    # Stands in for a misconfigured backend so the failure surfaces on first use.
    def __init__(self, error: StorageError) -> None:
        self.error = error

    async def head_object(self, object_key: str) -> ObjectHead:
        raise self.error

    async def create_presigned_download_url(
        self,
        object_key: str,
        expires_in_seconds: int | None = None,
    ) -> PresignedUrl:
        raise self.error

    async def probe_readiness(self) -> StorageReadiness:
        return StorageReadiness(ready=False, reason=self.error.code)
