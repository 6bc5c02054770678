"""
Tests for the outbox store and schema.
"""

from datetime import datetime, timedelta, timezone

import pytest

from eventrelay.core.database import DatabaseBackend
from eventrelay.core.outbox import OutboxEvent, OutboxStatus, create_outbox_schema
from eventrelay.core.outbox.schema import outbox_ddl


def make_row(name, created_at=None, **kwargs):
    return OutboxEvent(
        tenant_id="t1",
        aggregate="site",
        aggregate_id=name,
        type="site.published",
        payload={"siteId": name, "url": "https://a.example"},
        correlation_id=kwargs.pop("correlation_id", "corr"),
        created_at=created_at or datetime.now(timezone.utc),
        **kwargs,
    )


async def insert(db, store, *rows):
    async with db.transaction() as tx:
        await store.insert_many(tx, list(rows))


class TestSchema:
    """Test DDL per backend."""

    def test_postgres_ddl_uses_native_types(self):
        ddl = outbox_ddl(DatabaseBackend.POSTGRESQL)

        assert "JSONB" in ddl
        assert "TIMESTAMPTZ" in ddl
        assert "outbox_events_status_created_idx" in ddl

    def test_indexes_present(self):
        ddl = outbox_ddl(DatabaseBackend.SQLITE)

        for index in (
            "outbox_events_status_created_idx",
            "outbox_events_tenant_id_idx",
            "outbox_events_aggregate_idx",
            "outbox_events_type_idx",
            "outbox_events_correlation_idx",
        ):
            assert index in ddl

    @pytest.mark.asyncio
    async def test_schema_creation_is_idempotent(self, db):
        await create_outbox_schema(db)

        indexes = await db.fetch(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'outbox_events'"
        )
        names = {row["name"] for row in indexes}
        assert "outbox_events_status_created_idx" in names

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self, db, store):
        row = make_row("s1")
        await insert(db, store, row)

        with pytest.raises(Exception):
            await db.execute("UPDATE outbox_events SET status = 'in_flight' WHERE id = $1", row.id)

    @pytest.mark.asyncio
    async def test_published_requires_published_at(self, db, store):
        row = make_row("s1")
        await insert(db, store, row)

        with pytest.raises(Exception):
            await db.execute("UPDATE outbox_events SET status = 'published' WHERE id = $1", row.id)


class TestDeliverableQuery:
    """fetch_deliverable selection and ordering."""

    @pytest.mark.asyncio
    async def test_oldest_first(self, db, store):
        now = datetime.now(timezone.utc)
        late = make_row("late", now)
        early = make_row("early", now - timedelta(minutes=5))
        await insert(db, store, late, early)

        rows = await store.fetch_deliverable(now, 10)

        assert [r.aggregate_id for r in rows] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_excludes_terminal_and_waiting_rows(self, db, store):
        now = datetime.now(timezone.utc)
        pending = make_row("pending")
        published = make_row("published")
        dead = make_row("dead")
        waiting = make_row("waiting")
        due = make_row("due")
        await insert(db, store, pending, published, dead, waiting, due)

        await store.mark_published(published.id, now)
        await store.mark_failed(dead.id, "x", now, OutboxStatus.DEAD_LETTER)
        await store.mark_failed(waiting.id, "x", now, OutboxStatus.FAILED, now + timedelta(minutes=1))
        await store.mark_failed(due.id, "x", now, OutboxStatus.FAILED, now - timedelta(seconds=1))

        rows = await store.fetch_deliverable(now, 10)

        assert {r.aggregate_id for r in rows} == {"pending", "due"}

    @pytest.mark.asyncio
    async def test_backoff_compares_across_offsets(self, db, store):
        """A retry time written with an offset is compared as UTC."""
        now = datetime(2026, 10, 19, 1, 0, tzinfo=timezone.utc)
        eastern = timezone(timedelta(hours=-5))
        waiting = make_row("waiting", now - timedelta(minutes=5))
        due = make_row("due", now - timedelta(minutes=5))
        await insert(db, store, waiting, due)

        # 20:30-05:00 is 01:30Z, still in the future
        await store.mark_failed(
            waiting.id, "x", now, OutboxStatus.FAILED, datetime(2026, 10, 18, 20, 30, tzinfo=eastern)
        )
        # 19:30-05:00 is 00:30Z, already elapsed
        await store.mark_failed(
            due.id, "x", now, OutboxStatus.FAILED, datetime(2026, 10, 18, 19, 30, tzinfo=eastern)
        )

        rows = await store.fetch_deliverable(now, 10)

        assert [r.aggregate_id for r in rows] == ["due"]
        stored = await store.get(waiting.id)
        assert stored.next_attempt_at == datetime(2026, 10, 19, 1, 30, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_naive_timestamps_stored_as_utc(self, db, store):
        row = make_row("s1", datetime(2026, 10, 19, 1, 0))
        await insert(db, store, row)

        raw = await db.fetchval("SELECT created_at FROM outbox_events WHERE id = $1", row.id)

        assert raw == "2026-10-19T01:00:00.000000+00:00"


class TestTerminalRows:
    """Updates never touch published or dead-letter rows."""

    @pytest.mark.asyncio
    async def test_published_row_is_final(self, db, store):
        now = datetime.now(timezone.utc)
        row = make_row("s1")
        await insert(db, store, row)

        assert await store.mark_published(row.id, now) is True
        assert await store.mark_published(row.id, now + timedelta(seconds=5)) is False
        assert await store.mark_failed(row.id, "late", now, OutboxStatus.FAILED) is None

        stored = await store.get(row.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.published_at == now
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_dead_letter_is_final(self, db, store):
        now = datetime.now(timezone.utc)
        row = make_row("s1")
        await insert(db, store, row)

        assert await store.mark_failed(row.id, "x", now, OutboxStatus.DEAD_LETTER) == 1
        assert await store.mark_published(row.id, now) is False
        assert await store.mark_failed(row.id, "x", now, OutboxStatus.FAILED) is None


class TestLookups:
    """Tracing lookups by correlation id and aggregate."""

    @pytest.mark.asyncio
    async def test_find_by_correlation_id(self, db, store):
        await insert(db, store, make_row("a", correlation_id="c1"), make_row("b", correlation_id="c2"))

        rows = await store.find_by_correlation_id("c1")

        assert [r.aggregate_id for r in rows] == ["a"]

    @pytest.mark.asyncio
    async def test_count_by_status(self, db, store):
        now = datetime.now(timezone.utc)
        rows = [make_row(str(i)) for i in range(3)]
        await insert(db, store, *rows)
        await store.mark_published(rows[0].id, now)

        counts = await store.count_by_status()

        assert counts == {"pending": 2, "published": 1, "failed": 0, "dead_letter": 0}
