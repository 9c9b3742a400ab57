from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tenantinfra.core.config import get_settings
from tenantinfra.domain.models import Base
from tenantinfra.services.registry import RegistryWriter
from tenantinfra.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state(monkeypatch) -> None:
    # Settings and counters are process-wide caches; isolate them per test.
    monkeypatch.setenv("PROVISIONING_EXECUTION_MODE", "inline")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def session_factory():
    # One in-memory database per test; StaticPool keeps the single connection alive.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def registry(session_factory) -> RegistryWriter:
    return RegistryWriter(session_factory, lease_s=3600)
