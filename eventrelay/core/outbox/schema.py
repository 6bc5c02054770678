"""
Outbox Table Schema

DDL for the outbox_events table and the indexes the relay and tracing
lookups rely on. Timestamps are TIMESTAMPTZ on PostgreSQL and ISO-8601
UTC text on SQLite, which sorts chronologically.
"""

import logging

from ..database.adapter import DatabaseAdapter, DatabaseBackend

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "outbox_events"

_STATUS_CHECK = "status IN ('pending', 'published', 'failed', 'dead_letter')"
_PUBLISHED_CHECK = "(status = 'published') = (published_at IS NOT NULL)"

POSTGRES_DDL = f"""
CREATE TABLE IF NOT EXISTS {OUTBOX_TABLE} (
    id UUID PRIMARY KEY,
    tenant_id VARCHAR(100) NOT NULL,
    aggregate VARCHAR(100) NOT NULL,
    aggregate_id VARCHAR(100) NOT NULL,
    type VARCHAR(100) NOT NULL,
    payload JSONB NOT NULL,
    correlation_id VARCHAR(100),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    published_at TIMESTAMPTZ,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    last_attempt_at TIMESTAMPTZ,
    next_attempt_at TIMESTAMPTZ,
    error TEXT,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    CONSTRAINT outbox_events_status_check CHECK ({_STATUS_CHECK}),
    CONSTRAINT outbox_events_published_check CHECK ({_PUBLISHED_CHECK})
);
"""

SQLITE_DDL = f"""
CREATE TABLE IF NOT EXISTS {OUTBOX_TABLE} (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    aggregate TEXT NOT NULL,
    aggregate_id TEXT NOT NULL,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    correlation_id TEXT,
    created_at TEXT NOT NULL,
    published_at TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    last_attempt_at TEXT,
    next_attempt_at TEXT,
    error TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    CHECK ({_STATUS_CHECK}),
    CHECK ({_PUBLISHED_CHECK})
);
"""

INDEXES_DDL = f"""
CREATE INDEX IF NOT EXISTS outbox_events_status_created_idx ON {OUTBOX_TABLE} (status, created_at);
CREATE INDEX IF NOT EXISTS outbox_events_tenant_id_idx ON {OUTBOX_TABLE} (tenant_id);
CREATE INDEX IF NOT EXISTS outbox_events_aggregate_idx ON {OUTBOX_TABLE} (aggregate, aggregate_id);
CREATE INDEX IF NOT EXISTS outbox_events_type_idx ON {OUTBOX_TABLE} (type);
CREATE INDEX IF NOT EXISTS outbox_events_correlation_idx ON {OUTBOX_TABLE} (correlation_id);
"""


def outbox_ddl(backend: DatabaseBackend) -> str:
    """Full DDL script (table plus indexes) for a backend."""
    table = POSTGRES_DDL if backend == DatabaseBackend.POSTGRESQL else SQLITE_DDL
    return table + INDEXES_DDL


async def create_outbox_schema(db: DatabaseAdapter) -> None:
    """Create the outbox table and indexes if they do not exist."""
    await db.execute_script(outbox_ddl(db.backend))
    logger.info(f"Outbox schema ensured ({db.backend.value})")
