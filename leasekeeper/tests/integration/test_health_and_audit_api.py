from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from leasekeeper.apps.api.deps import get_storage
from leasekeeper.apps.api.main import create_app
from leasekeeper.core.errors import StorageError
from leasekeeper.providers.storage.base import UnavailableStorageProvider
from leasekeeper.tests.utils.auth import dev_headers


@pytest.fixture
def app():
    return create_app()


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def test_health_is_public(app) -> None:
    async with _client(app) as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}
    assert response.json()["meta"]["request_id"] == "req-123"


async def test_storage_health_reports_unavailable_backend(app) -> None:
    app.dependency_overrides[get_storage] = lambda: UnavailableStorageProvider(
        StorageError(503, "S3_NOT_CONFIGURED", "not configured")
    )
    async with _client(app) as client:
        response = await client.get("/v1/health/storage")
    assert response.status_code == 503
    assert response.json()["error"]["details"] == {"reason": "S3_NOT_CONFIGURED"}


async def test_storage_health_with_fake_backend(app) -> None:
    async with _client(app) as client:
        response = await client.get("/v1/health/storage")
    assert response.status_code == 200
    assert response.json()["data"]["ready"] is True


async def test_audit_events_are_admin_only_and_tenant_scoped(app) -> None:
    async with _client(app) as client:
        await client.post(
            "/v1/vms/register",
            json={"vm_uuid": "vm-aaaa1111"},
            headers=dev_headers("t-audit-a", "u1"),
        )
        forbidden = await client.get("/v1/audit/events", headers=dev_headers("t-audit-a", "u1", role="infra"))
        assert forbidden.status_code == 403

        mine = await client.get(
            "/v1/audit/events",
            params={"event_type": "vm.registered"},
            headers=dev_headers("t-audit-a", "admin", role="admin"),
        )
        assert mine.status_code == 200
        items = mine.json()["data"]["items"]
        assert len(items) == 1
        event_id = items[0]["id"]

        single = await client.get(f"/v1/audit/events/{event_id}", headers=dev_headers("t-audit-a", "admin", role="admin"))
        assert single.status_code == 200

        theirs = await client.get(f"/v1/audit/events/{event_id}", headers=dev_headers("t-audit-b", "admin", role="admin"))
        assert theirs.status_code == 404


async def test_openapi_marks_protected_routes(app) -> None:
    async with _client(app) as client:
        schema = (await client.get("/v1/openapi.json")).json()
    assert schema["components"]["securitySchemes"]["BearerAuth"]["scheme"] == "bearer"
    assert "security" not in schema["paths"]["/v1/health"]["get"]
    assert schema["paths"]["/v1/license/lease"]["post"]["security"] == [{"BearerAuth": []}]
