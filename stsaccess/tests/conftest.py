from __future__ import annotations

import os
import tempfile

# Settings are read at import time by the engine, so the test environment is fixed first.
_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="stsaccess-tests-"), "stsaccess.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}")
os.environ.setdefault("PROVISIONING_EXECUTION_MODE", "inline")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "test-credential-master-key")
os.environ.setdefault("BULK_GRANT_ENQUEUE_DELAY_S", "0")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
os.environ.setdefault("PROVISIONING_PROVIDER", "http")

import pytest

from stsaccess.core.config import get_settings
from stsaccess.domain.models import Base
from stsaccess.persistence.db import engine
from stsaccess.services import resilience


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Every test starts from an empty schema; dispose keeps connections off stale loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def local_run_locks(monkeypatch) -> None:
    # Health-check locking falls back to the in-process lock without Redis.
    async def _no_redis():
        return None

    monkeypatch.setattr(resilience, "get_resilience_redis", _no_redis)


@pytest.fixture(autouse=True)
def fresh_settings() -> None:
    # Tests override settings through env vars; drop the cached instance on both sides.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
