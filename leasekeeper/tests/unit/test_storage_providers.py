from __future__ import annotations

from typing import Any

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from leasekeeper.core import clock
from leasekeeper.core.config import Settings
from leasekeeper.core.errors import StorageError
from leasekeeper.providers.storage.base import clamp_presign_ttl, normalize_object_key
from leasekeeper.providers.storage.factory import get_storage_provider
from leasekeeper.providers.storage.fake import FakeStorageProvider
from leasekeeper.providers.storage.s3 import S3StorageProvider


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "HeadObject",
    )


class _StubS3Client:
    def __init__(self, *, head: Any = None, presign: Any = None, bucket: Any = None) -> None:
        self._head = head
        self._presign = presign
        self._bucket = bucket
        self.calls: list[tuple[str, dict]] = []

    @staticmethod
    def _answer(value: Any) -> Any:
        if isinstance(value, Exception):
            raise value
        return value

    def head_object(self, **kwargs):
        self.calls.append(("head_object", kwargs))
        return self._answer(self._head)

    def generate_presigned_url(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        return self._answer(self._presign)

    def head_bucket(self, **kwargs):
        self.calls.append(("head_bucket", kwargs))
        return self._answer(self._bucket)


def _s3(client: _StubS3Client) -> S3StorageProvider:
    return S3StorageProvider(
        bucket="artifacts",
        endpoint="http://minio:9000",
        region="us-east-1",
        access_key_id="key",
        secret_access_key="secret",
        client=client,
    )


@pytest.mark.parametrize(
    "value,expected",
    [(None, 300), (10, 60), (120, 120), (3600, 300), ("abc", 300)],
)
def test_clamp_presign_ttl(value, expected) -> None:
    assert clamp_presign_ttl(value) == expected


@pytest.mark.parametrize("key", ["", "  ", "a/../b", "a//b", None])
def test_object_key_rejects_traversal(key) -> None:
    with pytest.raises(StorageError) as excinfo:
        normalize_object_key(key)
    assert excinfo.value.status == 400


def test_object_key_strips_leading_slash() -> None:
    assert normalize_object_key("/winsible/a.zip") == "winsible/a.zip"


async def test_fake_provider_is_deterministic(monkeypatch) -> None:
    monkeypatch.setattr(clock, "now_ms", lambda: 1_000)
    storage = FakeStorageProvider(base_url="https://dl.test/", objects={"a/b c.zip": 10})
    head = await storage.head_object("/a/b c.zip")
    assert head.exists and head.content_length == 10
    assert not (await storage.head_object("a/other.zip")).exists

    first = await storage.create_presigned_download_url("a/b c.zip", expires_in_seconds=90)
    second = await storage.create_presigned_download_url("a/b c.zip", expires_in_seconds=90)
    assert first.url == second.url
    assert first.url.startswith("https://dl.test/a/b%20c.zip?expires=91000&signature=")
    assert first.expires_in_seconds == 90


async def test_s3_head_object_maps_not_found_and_failures() -> None:
    missing = _s3(_StubS3Client(head=_client_error("404", 404)))
    head = await missing.head_object("a.zip")
    assert not head.exists

    denied = _s3(_StubS3Client(head=_client_error("AccessDenied", 403)))
    with pytest.raises(StorageError) as excinfo:
        await denied.head_object("a.zip")
    assert (excinfo.value.status, excinfo.value.code) == (502, "S3_HEAD_OBJECT_FAILED")
    assert excinfo.value.details == "AccessDenied"

    offline = _s3(_StubS3Client(head=EndpointConnectionError(endpoint_url="http://minio:9000")))
    with pytest.raises(StorageError) as excinfo:
        await offline.head_object("a.zip")
    assert excinfo.value.code == "S3_HEAD_OBJECT_FAILED"


async def test_s3_head_object_reads_metadata() -> None:
    client = _StubS3Client(head={"ContentLength": 1024, "ETag": '"abc"', "Metadata": {"k": "v"}})
    head = await _s3(client).head_object("/a.zip")
    assert head.exists
    assert head.content_length == 1024
    assert head.metadata == {"k": "v"}
    assert client.calls == [("head_object", {"Bucket": "artifacts", "Key": "a.zip"})]


async def test_s3_presign_clamps_ttl_and_maps_errors(monkeypatch) -> None:
    monkeypatch.setattr(clock, "now_ms", lambda: 5_000)
    client = _StubS3Client(presign="https://minio/artifacts/a.zip?sig")
    presigned = await _s3(client).create_presigned_download_url("a.zip", expires_in_seconds=9999)
    assert presigned.url == "https://minio/artifacts/a.zip?sig"
    assert presigned.expires_in_seconds == 300
    assert presigned.expires_at_ms == 305_000
    assert client.calls[0][1]["ExpiresIn"] == 300

    broken = _s3(_StubS3Client(presign=_client_error("InvalidAccessKeyId", 403)))
    with pytest.raises(StorageError) as excinfo:
        await broken.create_presigned_download_url("a.zip")
    assert (excinfo.value.status, excinfo.value.code) == (502, "S3_PRESIGN_FAILED")


async def test_s3_readiness_probe() -> None:
    assert (await _s3(_StubS3Client(bucket={})).probe_readiness()).ready
    readiness = await _s3(_StubS3Client(bucket=_client_error("NoSuchBucket", 404))).probe_readiness()
    assert not readiness.ready
    assert readiness.reason == "NoSuchBucket"


def test_factory_selects_provider() -> None:
    assert isinstance(get_storage_provider(Settings(storage_provider="fake")), FakeStorageProvider)
    s3 = get_storage_provider(
        Settings(
            storage_provider="S3",
            s3_endpoint="http://minio:9000",
            s3_bucket_artifacts="artifacts",
            s3_access_key_id="key",
            s3_secret_access_key="secret",
        )
    )
    assert isinstance(s3, S3StorageProvider)


def test_factory_reports_missing_s3_settings() -> None:
    with pytest.raises(StorageError) as excinfo:
        get_storage_provider(Settings(storage_provider="s3", s3_endpoint="http://minio:9000"))
    assert (excinfo.value.status, excinfo.value.code) == (503, "S3_NOT_CONFIGURED")
    assert excinfo.value.details == {
        "missing": ["S3_BUCKET_ARTIFACTS", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"]
    }

    for provider in ("none", "gcs"):
        with pytest.raises(StorageError) as excinfo:
            get_storage_provider(Settings(storage_provider=provider))
        assert excinfo.value.code == "S3_NOT_CONFIGURED"
