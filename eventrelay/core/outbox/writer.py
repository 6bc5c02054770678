"""
Outbox Writer

Writes events to the outbox table within the same transaction
as your business logic for guaranteed delivery.

Usage:
    async def create_site(tx):
        await tx.execute("INSERT INTO sites (id, url) VALUES ($1, $2)", site_id, url)
        return site_id

    site_id = await with_outbox(
        create_site,
        [OutboxEventCreate.create(tenant_id, "site", site_id, "site.created", {"siteId": site_id})],
        db=db,
    )
    # Business row and outbox row commit together, or neither does
"""

import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from ..config import OutboxSettings
from ..database.adapter import DatabaseAdapter, Transaction
from ..events.schemas import validate_payload
from ..observability import create_span
from .models import OutboxEvent, OutboxEventCreate, OutboxStatus, generate_correlation_id
from .store import OutboxStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventInput = Union[OutboxEventCreate, Dict[str, Any]]
TransactionBody = Callable[[Transaction], Union[Awaitable[T], T]]


class OutboxWriter:
    """
    Validates producer events and inserts them as pending outbox rows.

    Rows written by one writer get strictly increasing created_at values,
    so the relay's created_at scan replays them in emission order.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        settings: Optional[OutboxSettings] = None,
        store: Optional[OutboxStore] = None,
    ):
        self.db = db
        self.settings = settings or OutboxSettings()
        self.store = store or OutboxStore(db)
        self._last_created_at: Optional[datetime] = None

    def prepare(self, events: Sequence[EventInput]) -> List[OutboxEvent]:
        """
        Validate events and build their rows. Touches no database.

        Raises:
            pydantic.ValidationError: an event is missing required fields
            EventValidationError: a payload fails its registered schema
        """
        creates = [
            event if isinstance(event, OutboxEventCreate) else OutboxEventCreate.model_validate(event)
            for event in events
        ]
        for create in creates:
            validate_payload(create.type, create.payload)

        rows = []
        for create in creates:
            rows.append(
                OutboxEvent(
                    tenant_id=create.tenant_id,
                    aggregate=create.aggregate,
                    aggregate_id=create.aggregate_id,
                    type=create.type,
                    payload=create.payload,
                    correlation_id=create.correlation_id or generate_correlation_id(),
                    created_at=self._next_created_at(),
                    attempts=0,
                    max_attempts=create.max_attempts or self.settings.max_attempts,
                    status=OutboxStatus.PENDING,
                )
            )
        return rows

    def _next_created_at(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    async def write(self, tx: Transaction, event: EventInput) -> OutboxEvent:
        """Write one event to the outbox using the caller's transaction."""
        rows = await self.write_batch(tx, [event])
        return rows[0]

    async def write_batch(self, tx: Transaction, events: Sequence[EventInput]) -> List[OutboxEvent]:
        """Write several events, in order, using the caller's transaction."""
        rows = self.prepare(events)
        await self._insert(tx, rows)
        return rows

    async def _insert(self, tx: Transaction, rows: List[OutboxEvent]) -> None:
        if not rows:
            return
        await self.store.insert_many(tx, rows)
        for row in rows:
            logger.debug(
                f"Wrote event to outbox: id={row.id} type={row.type}",
                extra={
                    "outbox_id": str(row.id),
                    "event_type": row.type,
                    "tenant_id": row.tenant_id,
                    "correlation_id": row.correlation_id,
                },
            )

    async def with_outbox(self, body: TransactionBody, events: Optional[Sequence[EventInput]] = None) -> Any:
        """
        Run body and record events atomically.

        Events are validated before the transaction opens. body receives the
        transaction handle and may be sync or async; its return value is
        returned. Any exception rolls back the business writes together with
        the outbox rows and is re-raised.
        """
        rows = self.prepare(events or [])

        with create_span("outbox.write", {"outbox.events": len(rows)}):
            async with self.db.transaction() as tx:
                result = body(tx)
                if inspect.isawaitable(result):
                    result = await result
                await self._insert(tx, rows)

        if rows:
            logger.info(
                f"Committed {len(rows)} outbox event(s)",
                extra={"event_types": [row.type for row in rows]},
            )
        return result


async def with_outbox(
    body: TransactionBody,
    events: Optional[Sequence[EventInput]] = None,
    *,
    db: DatabaseAdapter,
    writer: Optional[OutboxWriter] = None,
    settings: Optional[OutboxSettings] = None,
) -> Any:
    """
    Run a business transaction and record its events in the outbox.

    Args:
        body: Callable taking the transaction handle
        events: OutboxEventCreate instances or equivalent dicts
        db: Database adapter owning the transaction
        writer: Writer to reuse (keeps created_at ordering across calls)
        settings: Defaults for max_attempts when no writer is given

    Returns:
        Whatever body returned
    """
    writer = writer or OutboxWriter(db, settings)
    return await writer.with_outbox(body, events)
