from __future__ import annotations

import os
import tempfile

# Settings and the async engine are built at import time, so the test
# environment has to be in place before anything from leasekeeper loads.
_DB_DIR = tempfile.mkdtemp(prefix="leasekeeper-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}")
os.environ.setdefault("LICENSE_LEASE_SECRET", "test-lease-secret")
os.environ.setdefault("STORAGE_PROVIDER", "fake")
os.environ.setdefault("AUTH_ENABLED", "true")
os.environ.setdefault("AUTH_DEV_BYPASS", "true")
os.environ.setdefault("AUTH_CACHE_TTL_S", "0")

import pytest  # noqa: E402

from leasekeeper.apps.api.deps import reset_auth_cache  # noqa: E402
from leasekeeper.domain.models import Base  # noqa: E402
from leasekeeper.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from an empty schema; dispose so no connection outlives its loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_auth_cache()
    yield
    await engine.dispose()
