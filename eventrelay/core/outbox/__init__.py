"""
Outbox Pattern Implementation

Provides transactional event recording with at-least-once delivery.

Usage:
    from eventrelay.core.outbox import outbox_transaction

    async with outbox_transaction(db) as txn:
        # This is atomic with your business transaction
        await txn.tx.execute("UPDATE sites SET published = TRUE WHERE id = $1", site_id)
        await txn.emit(
            tenant_id=tenant_id,
            aggregate="site",
            aggregate_id=site_id,
            event_type="site.published",
            payload={"siteId": site_id, "url": url}
        )
"""

from .models import (
    OutboxEvent,
    OutboxEventCreate,
    OutboxStats,
    OutboxStatus,
    DEFAULT_MAX_ATTEMPTS,
    generate_correlation_id,
    retry_delay_ms,
)
from .errors import OutboxError, OutboxNotFoundError
from .schema import OUTBOX_TABLE, create_outbox_schema
from .store import OutboxStore
from .writer import OutboxWriter, with_outbox
from .transactional import OutboxTransaction, outbox_transaction
from .relay import OutboxRelay
from .dlq import DLQManager, DLQEntry, DLQAction

__all__ = [
    "OutboxEvent",
    "OutboxEventCreate",
    "OutboxStats",
    "OutboxStatus",
    "DEFAULT_MAX_ATTEMPTS",
    "generate_correlation_id",
    "retry_delay_ms",
    "OutboxError",
    "OutboxNotFoundError",
    "OUTBOX_TABLE",
    "create_outbox_schema",
    "OutboxStore",
    "OutboxWriter",
    "with_outbox",
    "OutboxTransaction",
    "outbox_transaction",
    "OutboxRelay",
    "DLQManager",
    "DLQEntry",
    "DLQAction",
]
