from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from leasekeeper.apps.api.deps import get_storage
from leasekeeper.apps.api.main import create_app
from leasekeeper.providers.storage.fake import FakeStorageProvider
from leasekeeper.tests.utils.auth import dev_headers
from leasekeeper.tests.utils.seed import ZERO_SHA256, seed_leasable


TENANT = "t-http-art"
OBJECT_KEY = "winsible/windows/stable/1.0.0/winsible.zip"


@pytest.fixture
def storage() -> FakeStorageProvider:
    return FakeStorageProvider(base_url="https://dl.test", objects={OBJECT_KEY: 1024})


@pytest.fixture
async def client(storage):
    app = create_app()
    app.dependency_overrides[get_storage] = lambda: storage
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


INFRA = dev_headers(TENANT, "ops", role="infra")
USER = dev_headers(TENANT, "u1")


async def _publish(client, **overrides) -> int:
    body = {
        "module": "winsible",
        "platform": "windows",
        "version": "1.0.0",
        "object_key": OBJECT_KEY,
        "sha256": ZERO_SHA256,
        "size_bytes": 1024,
    }
    body.update(overrides)
    response = await client.post("/v1/artifacts/releases", json=body, headers=INFRA)
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


async def _issue_token(client) -> str:
    await seed_leasable(tenant_id=TENANT)
    response = await client.post(
        "/v1/license/lease",
        json={"vm_uuid": "vm-aaaa1111", "agent_id": "a", "runner_id": "r", "module": "winsible"},
        headers=USER,
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["token"]


async def test_release_and_assignment_management(client) -> None:
    release_id = await _publish(client)
    assigned = await client.post(
        "/v1/artifacts/assign",
        json={"module": "winsible", "platform": "windows", "release_id": release_id},
        headers=INFRA,
    )
    assert assigned.status_code == 201
    assert assigned.json()["data"]["is_default"] is True

    lookup = await client.get("/v1/artifacts/assign/u1/winsible", headers=INFRA)
    assert lookup.status_code == 200
    data = lookup.json()["data"]
    assert data["user_assignment"] is None
    assert data["effective_assignment"]["release_id"] == release_id

    denied = await client.post(
        "/v1/artifacts/releases",
        json={"module": "winsible", "platform": "windows", "version": "x", "object_key": "k", "sha256": ZERO_SHA256, "size_bytes": 1},
        headers=USER,
    )
    assert denied.status_code == 403


async def test_invalid_release_payload_is_bad_request(client) -> None:
    response = await client.post(
        "/v1/artifacts/releases",
        json={"module": "winsible", "platform": "windows", "version": "1", "object_key": "k", "sha256": "zz", "size_bytes": 1},
        headers=INFRA,
    )
    assert response.status_code == 400
    assert response.json()["error"]["details"] == {"field": "sha256"}


async def test_resolve_download_end_to_end(client, storage) -> None:
    release_id = await _publish(client)
    await client.post(
        "/v1/artifacts/assign",
        json={"module": "winsible", "platform": "windows", "release_id": release_id},
        headers=INFRA,
    )
    token = await _issue_token(client)

    resolved = await client.post(
        "/v1/artifacts/resolve-download",
        json={"lease_token": token, "vm_uuid": "vm-aaaa1111", "module": "winsible", "platform": "windows"},
        headers={**USER, "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    assert resolved.status_code == 200, resolved.text
    grant = resolved.json()["data"]
    assert grant["release_id"] == release_id
    assert grant["download_url"].startswith("https://dl.test/")
    assert grant["sha256"] == ZERO_SHA256

    mismatch = await client.post(
        "/v1/artifacts/resolve-download",
        json={"lease_token": token, "vm_uuid": "vm-bbbb2222", "module": "winsible", "platform": "windows"},
        headers=USER,
    )
    assert mismatch.status_code == 403
    assert mismatch.json()["error"]["code"] == "VM_UUID_MISMATCH"

    audit = await client.get("/v1/artifacts/audit", headers=INFRA)
    assert audit.status_code == 200
    items = audit.json()["data"]["items"]
    assert [item["result"] for item in items] == ["denied", "allowed"]
    assert items[1]["request_ip"] == "203.0.113.9"

    only_allowed = await client.get("/v1/artifacts/audit", params={"result": "allowed", "limit": 1}, headers=INFRA)
    page = only_allowed.json()["data"]
    assert len(page["items"]) == 1
    assert page["next_offset"] is None


async def test_resolve_download_with_garbage_token(client) -> None:
    response = await client.post(
        "/v1/artifacts/resolve-download",
        json={"lease_token": "not.a.token", "vm_uuid": "vm-aaaa1111", "module": "winsible", "platform": "windows"},
        headers=USER,
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"

    audit = await client.get("/v1/artifacts/audit", params={"result": "denied"}, headers=INFRA)
    assert audit.json()["data"]["items"][0]["reason"] == "unauthorized"


async def test_oversized_forwarded_for_falls_back_to_peer_address(client) -> None:
    release_id = await _publish(client)
    await client.post(
        "/v1/artifacts/assign",
        json={"module": "winsible", "platform": "windows", "release_id": release_id},
        headers=INFRA,
    )
    token = await _issue_token(client)

    resolved = await client.post(
        "/v1/artifacts/resolve-download",
        json={"lease_token": token, "vm_uuid": "vm-aaaa1111", "module": "winsible", "platform": "windows"},
        headers={**USER, "X-Forwarded-For": "a" * 500},
    )
    assert resolved.status_code == 200, resolved.text

    audit = await client.get("/v1/artifacts/audit", headers=INFRA)
    (row,) = audit.json()["data"]["items"]
    assert row["result"] == "allowed"
    assert row["request_ip"] == "127.0.0.1"
