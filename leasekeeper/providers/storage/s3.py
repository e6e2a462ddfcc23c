from __future__ import annotations

import asyncio
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from leasekeeper.core import clock
from leasekeeper.core.errors import StorageError
from leasekeeper.providers.storage.base import (
    ObjectHead,
    PresignedUrl,
    StorageReadiness,
    clamp_presign_ttl,
    normalize_object_key,
)


logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NotFound", "NoSuchKey"}


def _error_reason(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        return str(error.get("Code") or error.get("Message") or exc.__class__.__name__)
    return str(exc) or exc.__class__.__name__


def _is_not_found(exc: ClientError) -> bool:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    code = str(exc.response.get("Error", {}).get("Code") or "")
    return status == 404 or code in _NOT_FOUND_CODES


class S3StorageProvider:
    def __init__(
        self,
        *,
        bucket: str,
        endpoint: str | None,
        region: str,
        access_key_id: str | None,
        secret_access_key: str | None,
        force_path_style: bool = True,
        default_presign_ttl_seconds: int = 300,
        client: Any | None = None,
    ) -> None:
        if not bucket:
            raise StorageError(503, "S3_NOT_CONFIGURED", "S3 bucket is not configured")
        self._bucket = bucket
        self._endpoint = endpoint
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._force_path_style = force_path_style
        self._default_ttl = clamp_presign_ttl(default_presign_ttl_seconds)
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3
        from botocore.config import Config

        self._client = boto3.client(
            "s3",
            endpoint_url=self._endpoint or None,
            region_name=self._region,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path" if self._force_path_style else "auto"},
            ),
        )
        return self._client

    async def head_object(self, object_key: str) -> ObjectHead:
        key = normalize_object_key(object_key)
        client = self._get_client()
        try:
            response = await asyncio.to_thread(client.head_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                return ObjectHead(exists=False, object_key=key)
            logger.warning("s3_head_object_failed bucket=%s key=%s reason=%s", self._bucket, key, _error_reason(exc))
            raise StorageError(
                502,
                "S3_HEAD_OBJECT_FAILED",
                "Failed to read object metadata from S3 storage",
                _error_reason(exc),
            ) from exc
        except BotoCoreError as exc:
            logger.warning("s3_head_object_failed bucket=%s key=%s reason=%s", self._bucket, key, _error_reason(exc))
            raise StorageError(
                502,
                "S3_HEAD_OBJECT_FAILED",
                "Failed to read object metadata from S3 storage",
                _error_reason(exc),
            ) from exc

        etag = response.get("ETag")
        return ObjectHead(
            exists=True,
            object_key=key,
            content_length=int(response.get("ContentLength") or 0),
            etag=etag if isinstance(etag, str) else None,
            metadata=dict(response.get("Metadata") or {}),
        )

    async def create_presigned_download_url(
        self,
        object_key: str,
        expires_in_seconds: int | None = None,
    ) -> PresignedUrl:
        key = normalize_object_key(object_key)
        ttl = clamp_presign_ttl(expires_in_seconds, self._default_ttl)
        client = self._get_client()
        try:
            url = await asyncio.to_thread(
                client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=ttl,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(
                502,
                "S3_PRESIGN_FAILED",
                "Failed to generate presigned S3 download URL",
                _error_reason(exc),
            ) from exc
        return PresignedUrl(
            url=url,
            object_key=key,
            expires_in_seconds=ttl,
            expires_at_ms=clock.now_ms() + ttl * 1000,
        )

    async def probe_readiness(self) -> StorageReadiness:
        client = self._get_client()
        try:
            await asyncio.to_thread(client.head_bucket, Bucket=self._bucket)
        except (BotoCoreError, ClientError) as exc:
            return StorageReadiness(ready=False, reason=_error_reason(exc))
        return StorageReadiness(ready=True)
