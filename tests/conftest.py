"""
Shared Test Fixtures

Every fixture works against a throwaway SQLite file so tests never share
state.
"""

import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from eventrelay.core.config import OutboxSettings
from eventrelay.core.database import DatabaseAdapter, DatabaseBackend, DatabaseConfig
from eventrelay.core.events import EventBus
from eventrelay.core.outbox import (
    OutboxEventCreate,
    OutboxRelay,
    OutboxStore,
    OutboxWriter,
    create_outbox_schema,
)

SITES_DDL = """
CREATE TABLE IF NOT EXISTS sites (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    url TEXT NOT NULL,
    published INTEGER NOT NULL DEFAULT 0
)
"""


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides: Any) -> OutboxSettings:
    """Settings independent of the process environment."""
    values: Dict[str, Any] = {
        "enabled": True,
        "relay_enabled": True,
        "poll_interval_ms": 50,
        "batch_size": 100,
        "max_attempts": 5,
        "retry_max_age_ms": 24 * 60 * 60 * 1000,
        "retry_backoff_ms": 0,
        "retry_backoff_max_ms": 30000,
        "retry_sweep_interval_ms": 0,
        "stop_timeout_ms": 2000,
    }
    values.update(overrides)
    return OutboxSettings(**values)


def site_published(
    site_id: Optional[str] = None,
    tenant_id: str = "tenant-1",
    url: str = "https://example.com",
    correlation_id: Optional[str] = None,
) -> OutboxEventCreate:
    site_id = site_id or str(uuid4())
    return OutboxEventCreate.create(
        tenant_id=tenant_id,
        aggregate="site",
        aggregate_id=site_id,
        event_type="site.published",
        payload={"siteId": site_id, "url": url},
        correlation_id=correlation_id,
    )


@pytest.fixture
def settings() -> OutboxSettings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    """Connected SQLite adapter with the outbox and a sites table."""
    adapter = DatabaseAdapter(
        DatabaseConfig(backend=DatabaseBackend.SQLITE, sqlite_path=str(tmp_path / "eventrelay.db"))
    )
    await adapter.connect()
    await create_outbox_schema(adapter)
    await adapter.execute(SITES_DDL)
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(db) -> OutboxStore:
    return OutboxStore(db)


@pytest.fixture
def writer(db, settings, store) -> OutboxWriter:
    return OutboxWriter(db, settings, store)


@pytest.fixture
async def relay(bus, db, settings, store, clock):
    relay = OutboxRelay(bus, db, settings, store, clock=clock)
    yield relay
    await relay.stop()


@pytest.fixture
def site_event():
    """Factory for valid site.published producer events."""
    return site_published


@pytest.fixture
def settings_factory():
    """Factory for OutboxSettings with overrides."""
    return make_settings
