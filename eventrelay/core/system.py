"""
Event System

Wires the event bus, outbox writer, relay and DLQ manager around one
database adapter.

Usage:
    system = EventSystem(DatabaseAdapter())
    await system.initialize()

    system.bus.subscribe("site.published", on_site_published)
    await system.with_outbox(create_site, [event])

    await system.shutdown()
"""

import logging
from typing import Any, Dict, Optional, Sequence

from .config import OutboxSettings
from .database.adapter import DatabaseAdapter
from .events.bus import EventBus
from .outbox.dlq import DLQManager
from .outbox.relay import Clock, OutboxRelay
from .outbox.schema import create_outbox_schema
from .outbox.store import OutboxStore
from .outbox.writer import EventInput, OutboxWriter, TransactionBody

logger = logging.getLogger(__name__)


class EventSystem:
    """
    Container for the event delivery components.

    initialize() connects, ensures the outbox schema and starts the relay
    when OUTBOX_ENABLED and OUTBOX_RELAY_ENABLED allow it. The database is
    disconnected on shutdown only if this system connected it.
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        settings: Optional[OutboxSettings] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db or DatabaseAdapter()
        self.settings = settings or OutboxSettings()
        self.bus = bus or EventBus()
        self.store = OutboxStore(self.db)
        self.writer = OutboxWriter(self.db, self.settings, self.store)
        self.relay = OutboxRelay(self.bus, self.db, self.settings, self.store, clock=clock)
        self.dlq = DLQManager(self.db, self.settings, self.store, clock=clock)
        self._owns_connection = False
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Connect, create the outbox schema and start the relay if enabled."""
        if self._initialized:
            return

        if not self.db.is_connected:
            await self.db.connect()
            self._owns_connection = True

        try:
            await create_outbox_schema(self.db)

            if self.settings.relay_active:
                await self.relay.start()
            else:
                reason = []
                if not self.settings.enabled:
                    reason.append("OUTBOX_ENABLED=false")
                if not self.settings.relay_enabled:
                    reason.append("OUTBOX_RELAY_ENABLED=false")
                logger.info(f"Outbox relay disabled: {', '.join(reason)}")
        except BaseException as e:
            logger.error(f"Event system failed to initialize: {e}")
            await self.relay.stop()
            await self._release_connection()
            raise

        self._initialized = True
        logger.info("Event system initialized")

    async def shutdown(self) -> None:
        """
        Stop the relay, clear the bus and release the database.

        A connection opened by a failed initialize() is released too.
        """
        if not self._initialized:
            await self._release_connection()
            return

        await self.relay.stop()
        await self.bus.shutdown()
        await self._release_connection()

        self._initialized = False
        logger.info("Event system shut down")

    async def _release_connection(self) -> None:
        if self._owns_connection:
            self._owns_connection = False
            await self.db.disconnect()

    async def with_outbox(self, body: TransactionBody, events: Optional[Sequence[EventInput]] = None) -> Any:
        """Run body in a transaction and record events atomically with it."""
        return await self.writer.with_outbox(body, events)

    async def health(self) -> Dict[str, Any]:
        """Health summary for liveness checks and the ops API."""
        relay = self.relay.health_check()
        outbox: Optional[Dict[str, Any]] = None
        outbox_error: Optional[str] = None
        try:
            stats = await self.relay.get_stats(raise_errors=True)
            outbox = stats.model_dump(mode="json")
        except Exception as e:
            outbox_error = str(e)

        healthy = (
            self.db.is_connected
            and outbox_error is None
            and (relay["running"] or not self.settings.relay_active)
        )

        result = {
            "status": "healthy" if healthy else "unhealthy",
            "database": {
                "backend": self.db.backend.value,
                "connected": self.db.is_connected,
            },
            "relay": relay,
            "bus": self.bus.get_stats(),
            "outbox": outbox,
        }
        if outbox_error is not None:
            result["outbox_error"] = outbox_error
        return result
