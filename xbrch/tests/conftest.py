from __future__ import annotations

import pytest

from xbrch.core.config import get_settings
from xbrch.persistence.db import Database
from xbrch.services.broadcasts import reset_broadcast_service
from xbrch.services.ledger import reset_usage_ledger


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch) -> None:
    # Never reach a real oracle from tests; clear caches so env overrides apply.
    monkeypatch.setenv("LLM_PROVIDER", "fake")
    get_settings.cache_clear()
    reset_usage_ledger()
    reset_broadcast_service()
    yield
    get_settings.cache_clear()
    reset_usage_ledger()
    reset_broadcast_service()


@pytest.fixture
async def database(tmp_path) -> Database:
    # One SQLite file per test keeps state isolated without a Postgres server.
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'xbrch-test.db'}")
    await db.create_all()
    yield db
    await db.dispose()
