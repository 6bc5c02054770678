"""
Tests for the outbox relay state machine against SQLite.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from eventrelay.core.outbox import OutboxEvent, OutboxRelay, OutboxStatus, OutboxStore


async def queue(writer, events):
    rows = []

    async def body(tx):
        pass

    await writer.with_outbox(body, events)
    for event in events:
        rows.extend(await writer.store.find_by_aggregate(event.aggregate, event.aggregate_id))
    return rows


def always_fail(event):
    raise RuntimeError("subscriber down")


class TestDelivery:
    """Successful delivery marks rows published."""

    @pytest.mark.asyncio
    async def test_pending_row_published(self, bus, writer, relay, store, site_event):
        received = []
        bus.subscribe("site.published", received.append)
        [row] = await queue(writer, [site_event("s1", tenant_id="t1", correlation_id="c-1")])

        processed = await relay.process_outbox_events()

        assert processed == 1
        stored = await store.get(row.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.published_at is not None
        assert stored.attempts == 1
        assert stored.error is None

        event = received[0]
        assert event.type == "site.published"
        assert event.payload == row.payload
        assert event.metadata.tenant_id == "t1"
        assert event.metadata.source == "outbox"
        assert event.metadata.correlation_id == "c-1"
        assert event.metadata.timestamp == row.created_at

    @pytest.mark.asyncio
    async def test_published_row_not_redelivered(self, bus, writer, relay, site_event):
        received = []
        bus.subscribe("site.published", received.append)
        await queue(writer, [site_event("s1")])

        await relay.process_outbox_events()
        second = await relay.process_outbox_events()

        assert second == 0
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_row_without_subscribers_is_published(self, writer, relay, store, site_event):
        [row] = await queue(writer, [site_event("s1")])

        await relay.process_outbox_events()

        assert (await store.get(row.id)).status == OutboxStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_fifo_within_batch(self, bus, writer, relay, site_event):
        """Rows are dispatched in created_at order."""
        seen = []
        bus.subscribe("site.published", lambda e: seen.append(e.payload["siteId"]))
        await queue(writer, [site_event(f"s{i}") for i in range(10)])

        await relay.process_outbox_events()

        assert seen == [f"s{i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_batch_size_limits_tick(self, bus, db, writer, store, clock, settings_factory, site_event):
        relay = OutboxRelay(bus, db, settings_factory(batch_size=3), store, clock=clock)
        await queue(writer, [site_event(f"s{i}") for i in range(5)])

        assert await relay.process_outbox_events() == 3
        assert await relay.process_outbox_events() == 2
        assert await relay.process_outbox_events() == 0

    @pytest.mark.asyncio
    async def test_direct_publish_event(self, bus, writer, relay, store, site_event):
        [row] = await queue(writer, [site_event("s1")])

        assert await relay.publish_event(row) is True
        assert (await store.get(row.id)).status == OutboxStatus.PUBLISHED


class TestFailureAndDeadLetter:
    """Failed deliveries are counted, retried and finally dead-lettered."""

    @pytest.mark.asyncio
    async def test_failure_recorded(self, bus, writer, relay, store, clock, site_event):
        bus.subscribe("site.published", always_fail)
        [row] = await queue(writer, [site_event("s1")])

        await relay.process_outbox_events()

        stored = await store.get(row.id)
        assert stored.status == OutboxStatus.FAILED
        assert stored.attempts == 1
        assert "subscriber down" in stored.error
        assert stored.last_attempt_at == clock.now
        assert stored.published_at is None

    @pytest.mark.asyncio
    async def test_five_attempts_then_dead_letter(self, bus, writer, relay, store, site_event):
        """pending -> failed x4 -> dead_letter after exactly five attempts."""
        bus.subscribe("site.published", always_fail)
        [row] = await queue(writer, [site_event("s1")])

        statuses = []
        for _ in range(5):
            await relay.process_outbox_events()
            stored = await store.get(row.id)
            statuses.append((stored.status, stored.attempts))

        assert statuses == [
            (OutboxStatus.FAILED, 1),
            (OutboxStatus.FAILED, 2),
            (OutboxStatus.FAILED, 3),
            (OutboxStatus.FAILED, 4),
            (OutboxStatus.DEAD_LETTER, 5),
        ]

        # Terminal: further ticks leave it alone
        assert await relay.process_outbox_events() == 0
        stored = await store.get(row.id)
        assert stored.status == OutboxStatus.DEAD_LETTER
        assert stored.attempts == 5

    @pytest.mark.asyncio
    async def test_recovered_subscriber_publishes_failed_row(self, bus, writer, relay, store, site_event):
        sub = bus.subscribe("site.published", always_fail)
        [row] = await queue(writer, [site_event("s1")])
        await relay.process_outbox_events()

        sub.unsubscribe()
        await relay.process_outbox_events()

        stored = await store.get(row.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.attempts == 2
        assert stored.error is None

    @pytest.mark.asyncio
    async def test_one_bad_row_does_not_block_batch(self, bus, writer, relay, store, site_event):
        def picky(event):
            if event.payload["siteId"] == "bad":
                raise RuntimeError("cannot handle")

        bus.subscribe("site.published", picky)
        rows = await queue(writer, [site_event("bad"), site_event("good")])

        assert await relay.process_outbox_events() == 2

        bad, good = [await store.get(r.id) for r in rows]
        assert bad.status == OutboxStatus.FAILED
        assert good.status == OutboxStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_error_is_truncated(self, bus, writer, relay, store, site_event):
        def loud(event):
            raise RuntimeError("x" * 2000)

        bus.subscribe("site.published", loud)
        [row] = await queue(writer, [site_event("s1")])

        await relay.process_outbox_events()

        assert len((await store.get(row.id)).error) <= 500

    @pytest.mark.asyncio
    async def test_backoff_delays_retry(self, bus, db, writer, store, clock, settings_factory, site_event):
        relay = OutboxRelay(bus, db, settings_factory(retry_backoff_ms=1000), store, clock=clock)
        bus.subscribe("site.published", always_fail)
        [row] = await queue(writer, [site_event("s1")])

        await relay.process_outbox_events()
        stored = await store.get(row.id)
        assert stored.next_attempt_at == clock.now + timedelta(seconds=1)

        assert await relay.process_outbox_events() == 0

        clock.advance(seconds=1)
        assert await relay.process_outbox_events() == 1
        stored = await store.get(row.id)
        assert stored.attempts == 2
        assert stored.next_attempt_at == clock.now + timedelta(seconds=2)


class TestStoreErrors:
    """Store failures abort the tick without raising."""

    @pytest.mark.asyncio
    async def test_fetch_error_aborts_tick(self, bus, db, settings, clock, caplog):
        class BrokenStore(OutboxStore):
            async def fetch_deliverable(self, now, limit):
                raise ConnectionError("database unavailable")

        relay = OutboxRelay(bus, db, settings, BrokenStore(db), clock=clock)

        with caplog.at_level("ERROR"):
            assert await relay.process_outbox_events() == 0

        assert "database unavailable" in caplog.text

    @pytest.mark.asyncio
    async def test_mark_error_stops_batch(self, bus, db, writer, settings, clock, site_event):
        class FlakyStore(OutboxStore):
            async def mark_published(self, entry_id, now):
                raise ConnectionError("lost connection")

        store = FlakyStore(db)
        relay = OutboxRelay(bus, db, settings, store, clock=clock)
        rows = await queue(writer, [site_event("s1"), site_event("s2")])

        assert await relay.process_outbox_events() == 0
        for row in rows:
            assert (await store.get(row.id)).status == OutboxStatus.PENDING


class TestRetryFailedEvents:
    """The bounded recovery sweep."""

    async def fail_once(self, bus, writer, relay, events):
        sub = bus.subscribe("site.published", always_fail)
        rows = await queue(writer, events)
        await relay.process_outbox_events()
        sub.unsubscribe()
        return rows

    @pytest.mark.asyncio
    async def test_resets_failed_rows(self, bus, writer, relay, store, site_event):
        [row] = await self.fail_once(bus, writer, relay, [site_event("s1")])

        count = await relay.retry_failed_events()

        assert count == 1
        stored = await store.get(row.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.error is None
        assert stored.last_attempt_at is None
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_rows_outside_window_untouched(self, bus, writer, relay, store, clock, site_event):
        [row] = await self.fail_once(bus, writer, relay, [site_event("s1")])

        clock.advance(hours=25)
        assert await relay.retry_failed_events() == 0
        assert await relay.retry_failed_events(max_age_ms=26 * 60 * 60 * 1000) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_age_ms", [0, 60 * 1000, 24 * 60 * 60 * 1000, 10 ** 12])
    async def test_dead_letter_never_resurrected(self, bus, writer, relay, store, site_event, max_age_ms):
        bus.subscribe("site.published", always_fail)
        [row] = await queue(writer, [site_event("s1")])
        for _ in range(5):
            await relay.process_outbox_events()
        assert (await store.get(row.id)).status == OutboxStatus.DEAD_LETTER

        assert await relay.retry_failed_events(max_age_ms=max_age_ms) == 0
        assert (await store.get(row.id)).status == OutboxStatus.DEAD_LETTER

    @pytest.mark.asyncio
    async def test_only_eligible_rows_reset(self, db, relay, store, clock):
        """Mixed table: only recent, retryable failed rows come back."""
        now = clock.now

        def row(name, created_at, max_attempts=5):
            return OutboxEvent(
                tenant_id="t1", aggregate="site", aggregate_id=name, type="site.published",
                payload={"siteId": name, "url": "https://a.example"},
                created_at=created_at, max_attempts=max_attempts,
            )

        recent = row("recent", now - timedelta(hours=1))
        old = row("old", now - timedelta(days=2))
        exhausted = row("exhausted", now - timedelta(hours=1), max_attempts=1)
        dead = row("dead", now - timedelta(hours=1))
        published = row("published", now - timedelta(hours=1))
        pending = row("pending", now - timedelta(hours=1))

        async with db.transaction() as tx:
            await store.insert_many(tx, [recent, old, exhausted, dead, published, pending])

        await store.mark_failed(recent.id, "boom", now, OutboxStatus.FAILED)
        await store.mark_failed(old.id, "boom", now, OutboxStatus.FAILED)
        await store.mark_failed(exhausted.id, "boom", now, OutboxStatus.FAILED)
        await store.mark_failed(dead.id, "boom", now, OutboxStatus.DEAD_LETTER)
        await store.mark_published(published.id, now)

        assert await relay.retry_failed_events() == 1

        assert (await store.get(recent.id)).status == OutboxStatus.PENDING
        assert (await store.get(old.id)).status == OutboxStatus.FAILED
        assert (await store.get(exhausted.id)).status == OutboxStatus.FAILED
        assert (await store.get(dead.id)).status == OutboxStatus.DEAD_LETTER
        assert (await store.get(published.id)).status == OutboxStatus.PUBLISHED
        assert (await store.get(pending.id)).status == OutboxStatus.PENDING


class TestStats:
    """Test relay statistics."""

    @pytest.mark.asyncio
    async def test_empty_outbox(self, relay):
        stats = await relay.get_stats()

        assert stats.pending == 0
        assert stats.failed == 0
        assert stats.dead_letter == 0
        assert stats.published_today == 0
        assert stats.oldest_pending is None

    @pytest.mark.asyncio
    async def test_counts(self, bus, writer, relay, store, site_event):
        def picky(event):
            if event.payload["siteId"] == "bad":
                raise RuntimeError("cannot handle")

        sub = bus.subscribe("site.published", picky)
        await queue(writer, [site_event("bad"), site_event("good")])
        await relay.process_outbox_events()
        sub.unsubscribe()
        [waiting] = await queue(writer, [site_event("waiting")])

        stats = await relay.get_stats()

        assert stats.pending == 1
        assert stats.failed == 1
        assert stats.published_today == 1
        assert stats.oldest_pending == waiting.created_at

    @pytest.mark.asyncio
    async def test_published_today_with_offset_clock(self, bus, db, settings, store, writer, site_event):
        """published_today counts in UTC whatever offset the clock reports."""
        eastern = timezone(timedelta(hours=-5))
        # 2026-10-19T01:00Z, after UTC midnight but before local midnight
        local_now = datetime(2026, 10, 18, 20, 0, tzinfo=eastern)
        relay = OutboxRelay(bus, db, settings, store, clock=lambda: local_now)
        [row] = await queue(writer, [site_event("s1")])

        await relay.process_outbox_events()
        stats = await relay.get_stats()

        assert stats.published_today == 1
        stored = await store.get(row.id)
        assert stored.published_at == datetime(2026, 10, 19, 1, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_store_error_zeroes_or_raises(self, relay, store, monkeypatch):
        async def broken():
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "count_by_status", broken)

        assert (await relay.get_stats()).pending == 0
        with pytest.raises(RuntimeError, match="database unavailable"):
            await relay.get_stats(raise_errors=True)


class TestLifecycle:
    """Start/stop semantics of the polling loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, relay):
        await relay.start()
        await relay.start()
        assert relay.is_running

        await relay.stop()
        await relay.stop()
        assert not relay.is_running

    @pytest.mark.asyncio
    async def test_loop_delivers_rows(self, bus, writer, relay, site_event):
        await queue(writer, [site_event("s1")])

        waiter = asyncio.create_task(bus.wait_for_event("site.published", timeout_ms=2000))
        await asyncio.sleep(0)
        await relay.start()

        event = await waiter
        assert event.payload["siteId"] == "s1"

        await relay.stop()
        assert relay.health_check()["last_tick_at"] is not None

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_tick(self, bus, writer, relay, store, site_event):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(event):
            started.set()
            await release.wait()

        bus.subscribe("site.published", slow)
        [row] = await queue(writer, [site_event("s1")])

        await relay.start()
        await asyncio.wait_for(started.wait(), timeout=2)

        stopper = asyncio.create_task(relay.stop())
        await asyncio.sleep(0.05)
        assert not stopper.done()

        release.set()
        await stopper

        assert (await store.get(row.id)).status == OutboxStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self, bus, db, writer, store, clock, settings_factory, site_event):
        relay = OutboxRelay(bus, db, settings_factory(stop_timeout_ms=50), store, clock=clock)
        started = asyncio.Event()

        async def stuck(event):
            started.set()
            await asyncio.sleep(10)

        bus.subscribe("site.published", stuck)
        [row] = await queue(writer, [site_event("s1")])

        await relay.start()
        await asyncio.wait_for(started.wait(), timeout=2)
        await asyncio.wait_for(relay.stop(), timeout=2)

        assert not relay.is_running
        assert (await store.get(row.id)).status == OutboxStatus.PENDING

    @pytest.mark.asyncio
    async def test_manual_tick_waits_for_loop_tick(self, bus, writer, relay, site_event):
        """Ticks never overlap."""
        active = 0
        peak = 0

        async def handler(event):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        bus.subscribe("site.published", handler)
        await queue(writer, [site_event(f"s{i}") for i in range(3)])

        await asyncio.gather(relay.process_outbox_events(), relay.process_outbox_events())

        assert peak == 1

    def test_health_check_when_stopped(self, relay):
        health = relay.health_check()

        assert health["running"] is False
        assert health["status"] == "stopped"
