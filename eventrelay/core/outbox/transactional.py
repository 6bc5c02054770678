"""
Transactional Event Publisher

Context manager form of with_outbox: business statements and emitted
events share one transaction, so either both commit or both roll back.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..database.adapter import DatabaseAdapter, Transaction
from .models import OutboxEvent, OutboxEventCreate
from .writer import EventInput, OutboxWriter


class OutboxTransaction:
    """
    Emits events into the outbox inside an open transaction.

    Usage:
        async with outbox_transaction(db) as txn:
            # Your business logic
            await txn.tx.execute("INSERT INTO sites ...")

            # Emit event (same transaction)
            await txn.emit(
                tenant_id=tenant_id,
                aggregate="site",
                aggregate_id=site_id,
                event_type="site.created",
                payload={"siteId": site_id}
            )
        # Both commit together or both rollback
    """

    def __init__(self, tx: Transaction, writer: OutboxWriter):
        self.tx = tx
        self._writer = writer
        self._events: List[OutboxEvent] = []

    async def emit(
        self,
        tenant_id: str,
        aggregate: str,
        aggregate_id: str,
        event_type: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> OutboxEvent:
        """
        Emit an event (writes to outbox in current transaction).

        Returns:
            The pending OutboxEvent row
        """
        entry = await self._writer.write(
            self.tx,
            OutboxEventCreate.create(
                tenant_id=tenant_id,
                aggregate=aggregate,
                aggregate_id=aggregate_id,
                event_type=event_type,
                payload=payload,
                correlation_id=correlation_id,
            ),
        )
        self._events.append(entry)
        return entry

    async def emit_batch(self, events: Sequence[EventInput]) -> List[OutboxEvent]:
        """Emit several events in order. All are validated before any is written."""
        entries = await self._writer.write_batch(self.tx, events)
        self._events.extend(entries)
        return entries

    @property
    def emitted_events(self) -> List[OutboxEvent]:
        """Get list of events emitted in this transaction."""
        return self._events.copy()


@asynccontextmanager
async def outbox_transaction(
    db: DatabaseAdapter,
    writer: Optional[OutboxWriter] = None,
) -> AsyncIterator[OutboxTransaction]:
    """
    Context manager for transactional event publishing.

    Usage:
        async with outbox_transaction(db) as txn:
            await txn.tx.execute("INSERT INTO sites ...")
            await txn.emit(tenant_id, "site", site_id, "site.created", {...})
    """
    writer = writer or OutboxWriter(db)
    async with db.transaction() as tx:
        txn = OutboxTransaction(tx, writer)
        try:
            yield txn
        except BaseException:
            # Rolled back with the business writes
            txn._events = []
            raise
