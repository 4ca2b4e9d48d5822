from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from cantodam.core.config import get_settings
from cantodam.domain.models import Base
from cantodam.services import telemetry
from cantodam.services.auth.token_store import TokenStore


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch):
    # Keep tests off developer .env files and shared Redis, and reset counters.
    monkeypatch.setenv("REDIS_URL", "")
    get_settings.cache_clear()
    telemetry.reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def token_store(tmp_path):
    # File-backed SQLite keeps one database across the store's short sessions.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'canto.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield TokenStore(async_sessionmaker(engine, expire_on_commit=False))
    finally:
        await engine.dispose()
