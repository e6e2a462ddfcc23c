from __future__ import annotations

import hashlib
import hmac
from urllib.parse import quote

from leasekeeper.core import clock
from leasekeeper.providers.storage.base import (
    ObjectHead,
    PresignedUrl,
    StorageReadiness,
    clamp_presign_ttl,
    normalize_object_key,
)


class FakeStorageProvider:
    def __init__(
        self,
        *,
        base_url: str = "https://artifacts.local/download",
        objects: dict[str, int] | None = None,
        signing_key: str = "fake-storage",
        default_presign_ttl_seconds: int = 300,
    ) -> None:
        # In-memory object sizes keyed by normalized object key.
        self._objects: dict[str, int] = {}
        for key, size in (objects or {}).items():
            self.put_object(key, size)
        self._base_url = base_url.rstrip("/")
        self._signing_key = signing_key.encode("utf-8")
        self._default_ttl = clamp_presign_ttl(default_presign_ttl_seconds)
        self.presign_calls: list[str] = []

    def put_object(self, object_key: str, size_bytes: int = 0) -> None:
        self._objects[normalize_object_key(object_key)] = int(size_bytes)

    def remove_object(self, object_key: str) -> None:
        self._objects.pop(normalize_object_key(object_key), None)

    async def head_object(self, object_key: str) -> ObjectHead:
        key = normalize_object_key(object_key)
        if key not in self._objects:
            return ObjectHead(exists=False, object_key=key)
        return ObjectHead(exists=True, object_key=key, content_length=self._objects[key])

    async def create_presigned_download_url(
        self,
        object_key: str,
        expires_in_seconds: int | None = None,
    ) -> PresignedUrl:
        key = normalize_object_key(object_key)
        ttl = clamp_presign_ttl(expires_in_seconds, self._default_ttl)
        expires_at_ms = clock.now_ms() + ttl * 1000
        # Deterministic signature so tests can assert on the exact URL.
        signature = hmac.new(
            self._signing_key,
            f"{key}:{expires_at_ms}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        self.presign_calls.append(key)
        url = f"{self._base_url}/{quote(key)}?expires={expires_at_ms}&signature={signature}"
        return PresignedUrl(url=url, object_key=key, expires_in_seconds=ttl, expires_at_ms=expires_at_ms)

    async def probe_readiness(self) -> StorageReadiness:
        return StorageReadiness(ready=True)
