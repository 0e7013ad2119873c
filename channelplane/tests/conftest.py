from __future__ import annotations

import os
import tempfile

# Settings are read once at import; point the engine at a throwaway SQLite file before anything loads it.
_DB_DIR = tempfile.mkdtemp(prefix="channelplane-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/channelplane.db")
os.environ.setdefault("COORDINATION_MODE", "local")
os.environ.setdefault("OPS_API_TOKEN", "ops-test-token")
os.environ.setdefault("UPSTREAM_APP_SECRET", "app-test-secret")
os.environ.setdefault("UPSTREAM_APP_ID", "app-test-id")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "verify-test-token")
os.environ.setdefault("RECONCILE_INTER_ITEM_DELAY_MS", "0")

import pytest  # noqa: E402

from channelplane.core.config import get_settings  # noqa: E402
from channelplane.domain.models import Base  # noqa: E402
from channelplane.persistence.db import engine  # noqa: E402
from channelplane.services.backoff import reset_backoff_engine  # noqa: E402
from channelplane.services.credential_refresh import reset_credential_refresher  # noqa: E402
from channelplane.services.reconciliation import reset_reconciler  # noqa: E402
from channelplane.services.resilience import reset_coordination_redis  # noqa: E402
from channelplane.services.scheduling import reset_local_coordination  # noqa: E402
from channelplane.services.telemetry import reset_telemetry  # noqa: E402
from channelplane.services.upstream import reset_upstream_client  # noqa: E402
from channelplane.services.vault import set_vault  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; the engine is disposed so connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Process-wide singletons cache settings and in-memory state; rebuild them per test.
    get_settings.cache_clear()
    reset_backoff_engine()
    reset_reconciler()
    reset_credential_refresher()
    reset_upstream_client()
    reset_coordination_redis()
    reset_local_coordination()
    reset_telemetry()
    set_vault(None)
    yield
    get_settings.cache_clear()
    set_vault(None)
