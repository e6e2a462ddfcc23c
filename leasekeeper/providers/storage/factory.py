from __future__ import annotations

from leasekeeper.core.config import Settings, get_settings
from leasekeeper.core.errors import StorageError
from leasekeeper.providers.storage.base import StorageProvider
from leasekeeper.providers.storage.fake import FakeStorageProvider
from leasekeeper.providers.storage.s3 import S3StorageProvider


def _s3_provider(settings: Settings) -> S3StorageProvider:
    values = {
        "S3_ENDPOINT": settings.s3_endpoint,
        "S3_BUCKET_ARTIFACTS": settings.s3_bucket_artifacts,
        "S3_ACCESS_KEY_ID": settings.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": settings.s3_secret_access_key,
    }
    missing = [name for name, value in values.items() if not str(value or "").strip()]
    if len(missing) == len(values):
        raise StorageError(503, "S3_NOT_CONFIGURED", "S3 endpoint, bucket and credentials are not configured")
    if missing:
        raise StorageError(
            503,
            "S3_NOT_CONFIGURED",
            f"Incomplete S3 config: missing {', '.join(missing)}",
            {"missing": missing},
        )
    return S3StorageProvider(
        bucket=str(settings.s3_bucket_artifacts).strip(),
        endpoint=str(settings.s3_endpoint).strip(),
        region=settings.s3_region,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        force_path_style=settings.s3_force_path_style,
        default_presign_ttl_seconds=settings.s3_presign_ttl_seconds,
    )


def get_storage_provider(settings: Settings | None = None) -> StorageProvider:
    resolved = settings or get_settings()
    provider = (resolved.storage_provider or "none").lower()

    if provider == "none":
        # Surface a stable error so download resolution records a denied audit row.
        raise StorageError(503, "S3_NOT_CONFIGURED", "STORAGE_PROVIDER is set to none")
    if provider == "fake":
        return FakeStorageProvider(
            base_url=resolved.fake_storage_base_url,
            default_presign_ttl_seconds=resolved.s3_presign_ttl_seconds,
        )
    if provider == "s3":
        return _s3_provider(resolved)

    raise StorageError(503, "S3_NOT_CONFIGURED", f"Unsupported storage provider: {provider}")
