"""
Outbox Store

Every statement that touches the outbox_events table. Producers insert
through a transaction handle; the relay and operator tooling use the
adapter directly, where each statement is its own atomic write.

Update statements guard on the current status so terminal rows
(published, dead_letter) are never modified.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import UUID

from ..database.adapter import DatabaseAdapter, Transaction, rows_affected
from .models import OutboxEvent, OutboxStatus
from .schema import OUTBOX_TABLE

logger = logging.getLogger(__name__)

Executor = Union[DatabaseAdapter, Transaction]

COLUMNS = (
    "id, tenant_id, aggregate, aggregate_id, type, payload, correlation_id, "
    "created_at, published_at, attempts, max_attempts, last_attempt_at, "
    "next_attempt_at, error, status"
)

MAX_ERROR_LENGTH = 500


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class OutboxStore:
    """Repository for outbox rows."""

    def __init__(self, db: DatabaseAdapter):
        self.db = db

    # Producer side

    async def insert_many(self, conn: Executor, entries: Sequence[OutboxEvent]) -> None:
        """Insert rows using the caller's transaction handle."""
        for entry in entries:
            await conn.execute(
                f"""
                INSERT INTO {OUTBOX_TABLE} (
                    id, tenant_id, aggregate, aggregate_id, type, payload,
                    correlation_id, created_at, attempts, max_attempts, status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                entry.id,
                entry.tenant_id,
                entry.aggregate,
                entry.aggregate_id,
                entry.type,
                json.dumps(entry.payload),
                entry.correlation_id,
                entry.created_at,
                entry.attempts,
                entry.max_attempts,
                entry.status.value,
            )

    # Relay side

    async def fetch_deliverable(self, now: datetime, limit: int) -> List[OutboxEvent]:
        """
        Rows ready for delivery, oldest first.

        Pending rows, plus failed rows still under their attempt ceiling
        whose backoff has elapsed.
        """
        rows = await self.db.fetch(
            f"""
            SELECT {COLUMNS}
            FROM {OUTBOX_TABLE}
            WHERE status = $1
               OR (status = $2 AND attempts < max_attempts
                   AND (next_attempt_at IS NULL OR next_attempt_at <= $3))
            ORDER BY created_at ASC
            LIMIT $4
            """,
            OutboxStatus.PENDING.value,
            OutboxStatus.FAILED.value,
            now,
            limit,
        )
        return [OutboxEvent.from_row(row) for row in rows]

    async def mark_published(self, entry_id: UUID, now: datetime) -> bool:
        """Record a successful delivery. Returns False if the row was not deliverable."""
        result = await self.db.execute(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET status = $1,
                published_at = $2,
                attempts = attempts + 1,
                last_attempt_at = $3,
                next_attempt_at = NULL,
                error = NULL
            WHERE id = $4 AND status IN ($5, $6)
            """,
            OutboxStatus.PUBLISHED.value,
            now,
            now,
            entry_id,
            OutboxStatus.PENDING.value,
            OutboxStatus.FAILED.value,
        )
        return rows_affected(result) == 1

    async def mark_failed(
        self,
        entry_id: UUID,
        error: str,
        now: datetime,
        status: OutboxStatus,
        next_attempt_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Record a failed delivery attempt in one atomic update.

        Returns the new attempt count, or None if the row was not deliverable.
        """
        row = await self.db.fetchrow(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET attempts = attempts + 1,
                last_attempt_at = $1,
                error = $2,
                next_attempt_at = $3,
                status = $4
            WHERE id = $5 AND status IN ($6, $7)
            RETURNING attempts
            """,
            now,
            (error or "Unknown error")[:MAX_ERROR_LENGTH],
            next_attempt_at,
            status.value,
            entry_id,
            OutboxStatus.PENDING.value,
            OutboxStatus.FAILED.value,
        )
        return row["attempts"] if row else None

    async def reset_failed(self, created_after: datetime) -> int:
        """Move retryable failed rows created at or after the cutoff back to pending."""
        result = await self.db.execute(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET status = $1,
                error = NULL,
                last_attempt_at = NULL,
                next_attempt_at = NULL
            WHERE status = $2
              AND created_at >= $3
              AND attempts < max_attempts
            """,
            OutboxStatus.PENDING.value,
            OutboxStatus.FAILED.value,
            created_after,
        )
        return rows_affected(result)

    # Queries

    async def get(self, entry_id: UUID) -> Optional[OutboxEvent]:
        row = await self.db.fetchrow(
            f"SELECT {COLUMNS} FROM {OUTBOX_TABLE} WHERE id = $1",
            entry_id,
        )
        return OutboxEvent.from_row(row) if row else None

    async def count_by_status(self) -> Dict[str, int]:
        rows = await self.db.fetch(
            f"""
            SELECT status, COUNT(*) AS count
            FROM {OUTBOX_TABLE}
            GROUP BY status
            """
        )
        counts = {status.value: 0 for status in OutboxStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    async def count_published_since(self, since: datetime) -> int:
        count = await self.db.fetchval(
            f"""
            SELECT COUNT(*) AS count
            FROM {OUTBOX_TABLE}
            WHERE status = $1 AND published_at >= $2
            """,
            OutboxStatus.PUBLISHED.value,
            since,
        )
        return count or 0

    async def oldest_pending(self) -> Optional[datetime]:
        value = await self.db.fetchval(
            f"""
            SELECT created_at
            FROM {OUTBOX_TABLE}
            WHERE status = $1
            ORDER BY created_at ASC
            LIMIT 1
            """,
            OutboxStatus.PENDING.value,
        )
        return _parse_timestamp(value)

    async def list_by_status(
        self,
        status: OutboxStatus,
        limit: int = 100,
        offset: int = 0,
        correlation_id: Optional[str] = None,
    ) -> List[OutboxEvent]:
        """Rows with a status, newest first."""
        if correlation_id:
            rows = await self.db.fetch(
                f"""
                SELECT {COLUMNS}
                FROM {OUTBOX_TABLE}
                WHERE status = $1 AND correlation_id = $2
                ORDER BY created_at DESC
                LIMIT $3 OFFSET $4
                """,
                status.value, correlation_id, limit, offset
            )
        else:
            rows = await self.db.fetch(
                f"""
                SELECT {COLUMNS}
                FROM {OUTBOX_TABLE}
                WHERE status = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                status.value, limit, offset
            )
        return [OutboxEvent.from_row(row) for row in rows]

    async def count_with_status(self, status: OutboxStatus, correlation_id: Optional[str] = None) -> int:
        if correlation_id:
            count = await self.db.fetchval(
                f"SELECT COUNT(*) AS count FROM {OUTBOX_TABLE} WHERE status = $1 AND correlation_id = $2",
                status.value, correlation_id
            )
        else:
            count = await self.db.fetchval(
                f"SELECT COUNT(*) AS count FROM {OUTBOX_TABLE} WHERE status = $1",
                status.value
            )
        return count or 0

    async def count_by_type(self, status: OutboxStatus) -> Dict[str, int]:
        rows = await self.db.fetch(
            f"""
            SELECT type, COUNT(*) AS count
            FROM {OUTBOX_TABLE}
            WHERE status = $1
            GROUP BY type
            ORDER BY count DESC
            """,
            status.value
        )
        return {row["type"]: row["count"] for row in rows}

    async def oldest_with_status(self, status: OutboxStatus) -> Optional[datetime]:
        value = await self.db.fetchval(
            f"SELECT MIN(created_at) AS oldest FROM {OUTBOX_TABLE} WHERE status = $1",
            status.value
        )
        return _parse_timestamp(value)

    async def find_by_correlation_id(self, correlation_id: str, limit: int = 100) -> List[OutboxEvent]:
        """All rows sharing a correlation id, in creation order."""
        rows = await self.db.fetch(
            f"""
            SELECT {COLUMNS}
            FROM {OUTBOX_TABLE}
            WHERE correlation_id = $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            correlation_id, limit
        )
        return [OutboxEvent.from_row(row) for row in rows]

    async def find_by_aggregate(self, aggregate: str, aggregate_id: str, limit: int = 100) -> List[OutboxEvent]:
        """Event history of one aggregate instance, in creation order."""
        rows = await self.db.fetch(
            f"""
            SELECT {COLUMNS}
            FROM {OUTBOX_TABLE}
            WHERE aggregate = $1 AND aggregate_id = $2
            ORDER BY created_at ASC
            LIMIT $3
            """,
            aggregate, aggregate_id, limit
        )
        return [OutboxEvent.from_row(row) for row in rows]

    async def delete(self, entry_id: UUID, status: OutboxStatus) -> bool:
        result = await self.db.execute(
            f"DELETE FROM {OUTBOX_TABLE} WHERE id = $1 AND status = $2",
            entry_id, status.value
        )
        return rows_affected(result) == 1

    async def delete_older_than(self, status: OutboxStatus, cutoff: datetime) -> int:
        result = await self.db.execute(
            f"DELETE FROM {OUTBOX_TABLE} WHERE status = $1 AND created_at < $2",
            status.value, cutoff
        )
        return rows_affected(result)
