"""
Outbox Relay

Background worker that polls the outbox and delivers pending events to
the event bus, with retry accounting and dead-lettering.

Delivery is at-least-once: a row is marked published only after every
subscriber ran without error, so a crash between delivery and the status
update redelivers the row on the next tick. Subscribers must be idempotent.

Only one relay may poll a given outbox at a time; see OUTBOX_RELAY_ENABLED.

Usage:
    relay = OutboxRelay(bus, db, OutboxSettings())
    await relay.start()
    ...
    await relay.stop()
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from ..config import OutboxSettings
from ..database.adapter import DatabaseAdapter
from ..events.bus import EventBus
from ..events.models import EventMetadata
from ..observability import add_event_to_span, create_span, record_counter, record_histogram
from .models import OutboxEvent, OutboxStats, OutboxStatus, retry_delay_ms
from .store import OutboxStore

logger = logging.getLogger(__name__)

RELAY_SOURCE = "outbox"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboxRelay:
    """
    Polls the outbox and publishes rows to the bus.

    Features:
    - Ticks on start, then every poll interval until stopped
    - Ticks are serialized; manual ticks never overlap the loop
    - Failed rows are retried until max_attempts, then dead-lettered
    - Optional exponential backoff between retries
    """

    def __init__(
        self,
        bus: EventBus,
        db: DatabaseAdapter,
        settings: Optional[OutboxSettings] = None,
        store: Optional[OutboxStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.bus = bus
        self.db = db
        self.settings = settings or OutboxSettings()
        self.store = store or OutboxStore(db)
        self._clock = clock or _utcnow
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._last_tick_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop. No-op if already running."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"OutboxRelay started (poll every {self.settings.poll_interval_ms}ms, "
            f"batch {self.settings.batch_size})"
        )

    async def stop(self) -> None:
        """
        Stop the polling loop. No-op if not running.

        An in-flight tick may finish; after OUTBOX_STOP_TIMEOUT_MS the loop
        is cancelled.
        """
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        task, self._task = self._task, None
        if task:
            try:
                await asyncio.wait_for(
                    asyncio.shield(task), timeout=self.settings.stop_timeout_ms / 1000.0
                )
            except asyncio.TimeoutError:
                logger.warning("OutboxRelay tick did not finish in time, cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("OutboxRelay stopped")

    async def _run(self) -> None:
        """Main polling loop."""
        while not self._stop_event.is_set():
            try:
                await self.process_outbox_events()
            except Exception as e:
                logger.error(f"OutboxRelay error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def process_outbox_events(self) -> int:
        """
        Run one tick: deliver up to batch_size deliverable rows, oldest first.

        Store errors abort the tick and are logged, never raised.

        Returns:
            Number of rows dispatched
        """
        async with self._tick_lock:
            started = time.perf_counter()
            processed = 0

            with create_span("outbox.process", {"outbox.batch_size": self.settings.batch_size}) as span:
                try:
                    rows = await self.store.fetch_deliverable(self._clock(), self.settings.batch_size)
                except Exception as e:
                    logger.error(f"Failed to fetch outbox events: {e}", exc_info=True)
                    return 0

                for row in rows:
                    try:
                        await self.publish_event(row)
                    except Exception as e:
                        logger.error(
                            f"Failed to update outbox event {row.id}, aborting tick: {e}",
                            exc_info=True,
                            extra={"outbox_id": str(row.id), "event_type": row.type},
                        )
                        break
                    processed += 1

                span.set_attribute("outbox.processed", processed)

            self._last_tick_at = self._clock()
            record_histogram("outbox_processing_duration_seconds", time.perf_counter() - started)

            if processed:
                logger.debug(f"Processed {processed} outbox event(s)")
            return processed

    async def publish_event(self, row: OutboxEvent) -> bool:
        """
        Deliver one row to the bus and record the outcome.

        Returns:
            True if delivered, False if the delivery failed and was recorded

        Raises:
            Exception: the store failed while recording the outcome
        """
        metadata = EventMetadata(
            tenant_id=row.tenant_id,
            timestamp=row.created_at,
            source=RELAY_SOURCE,
            correlation_id=row.correlation_id or str(uuid4()),
        )

        with create_span(
            "outbox.publish",
            {
                "outbox.id": str(row.id),
                "event.type": row.type,
                "event.tenant_id": row.tenant_id,
                "outbox.attempt": row.attempts + 1,
            },
        ):
            try:
                await self.bus.publish(row.type, row.payload, metadata)
            except Exception as e:
                await self._record_failure(row, e)
                return False

            updated = await self.store.mark_published(row.id, self._clock())
            if not updated:
                logger.warning(
                    f"Outbox event {row.id} was no longer deliverable when marking published",
                    extra={"outbox_id": str(row.id), "event_type": row.type},
                )

        record_counter("outbox_published_total", 1, {"event_type": row.type})
        logger.debug(
            f"Delivered outbox event {row.id}",
            extra={"outbox_id": str(row.id), "event_type": row.type, "tenant_id": row.tenant_id},
        )
        return True

    async def _record_failure(self, row: OutboxEvent, error: Exception) -> None:
        now = self._clock()
        attempts = row.attempts + 1

        if attempts >= row.max_attempts:
            status = OutboxStatus.DEAD_LETTER
            next_attempt_at = None
        else:
            status = OutboxStatus.FAILED
            delay = retry_delay_ms(
                attempts, self.settings.retry_backoff_ms, self.settings.retry_backoff_max_ms
            )
            next_attempt_at = now + timedelta(milliseconds=delay) if delay else None

        await self.store.mark_failed(row.id, str(error), now, status, next_attempt_at)
        add_event_to_span(
            "outbox.delivery_failed",
            {"outbox.status": status.value, "outbox.attempts": attempts, "error": str(error)[:200]},
        )

        extra = {
            "outbox_id": str(row.id),
            "event_type": row.type,
            "tenant_id": row.tenant_id,
            "attempts": attempts,
            "max_attempts": row.max_attempts,
        }
        record_counter("outbox_failed_total", 1, {"event_type": row.type})
        if status == OutboxStatus.DEAD_LETTER:
            record_counter("outbox_dead_lettered_total", 1, {"event_type": row.type})
            logger.error(
                f"Outbox event {row.id} moved to dead letter after {attempts} attempts: {error}",
                extra=extra,
            )
        else:
            retry_at = next_attempt_at.isoformat() if next_attempt_at else "next poll"
            logger.warning(
                f"Outbox event {row.id} failed (attempt {attempts}), retry at {retry_at}: {error}",
                extra=extra,
            )

    async def retry_failed_events(self, max_age_ms: Optional[int] = None) -> int:
        """
        Reset retryable failed rows to pending.

        Only rows created within max_age_ms (default OUTBOX_RETRY_MAX_AGE_MS)
        and still under their attempt ceiling are reset. Dead-letter rows are
        never touched.

        Returns:
            Number of rows reset, 0 on store error
        """
        if max_age_ms is None:
            max_age_ms = self.settings.retry_max_age_ms
        cutoff = self._clock() - timedelta(milliseconds=max_age_ms)

        try:
            count = await self.store.reset_failed(cutoff)
        except Exception as e:
            logger.error(f"Failed to retry outbox events: {e}", exc_info=True)
            return 0

        if count:
            record_counter("outbox_retried_total", count)
            logger.info(f"Reset {count} failed outbox event(s) for retry")
        return count

    async def get_stats(self, raise_errors: bool = False) -> OutboxStats:
        """
        Outbox counts for dashboards; published_today counts since UTC midnight.

        Returns zeroed stats on store error unless raise_errors is set.
        """
        now = self._clock()
        midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        try:
            counts = await self.store.count_by_status()
            published_today = await self.store.count_published_since(midnight)
            oldest_pending = await self.store.oldest_pending()
        except Exception as e:
            logger.error(f"Failed to get outbox stats: {e}", exc_info=True)
            if raise_errors:
                raise
            return OutboxStats()

        return OutboxStats(
            pending=counts[OutboxStatus.PENDING.value],
            failed=counts[OutboxStatus.FAILED.value],
            dead_letter=counts[OutboxStatus.DEAD_LETTER.value],
            published_today=published_today,
            oldest_pending=oldest_pending,
        )

    def health_check(self) -> Dict[str, Any]:
        """Return relay status for monitoring."""
        return {
            "status": "running" if self._running else "stopped",
            "running": self._running,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "poll_interval_ms": self.settings.poll_interval_ms,
        }
