"""
Database abstraction layer supporting SQLite and PostgreSQL.

The outbox only needs a begin/commit/rollback transaction and ordered,
filterable table scans; both backends provide them through one interface.

Usage:
    from eventrelay.core.database import DatabaseAdapter, DatabaseConfig

    db = DatabaseAdapter(DatabaseConfig())
    await db.connect()

    rows = await db.fetch("SELECT * FROM outbox_events WHERE status = $1", "pending")
    async with db.transaction() as tx:
        await tx.execute("UPDATE sites SET url = $1 WHERE id = $2", url, site_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    Transaction,
    rows_affected,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "Transaction",
    "rows_affected",
]
