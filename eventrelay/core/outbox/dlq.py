"""
Dead Letter Queue (DLQ) Management

Operator tooling for outbox rows that exhausted their delivery attempts.

Dead-letter rows are terminal and never modified: replaying one inserts
a fresh pending copy, purging deletes it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..config import OutboxSettings
from ..database.adapter import DatabaseAdapter
from .errors import OutboxNotFoundError
from .models import OutboxEvent, OutboxStatus, generate_correlation_id
from .relay import Clock
from .store import OutboxStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    REPLAY = "replay"
    PURGE = "purge"
    PURGE_OLD = "purge_old"


@dataclass
class DLQEntry:
    """A dead letter queue entry."""
    id: UUID
    tenant_id: str
    aggregate: str
    aggregate_id: str
    correlation_id: Optional[str]
    type: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    created_at: datetime
    failed_at: datetime

    @classmethod
    def from_event(cls, event: OutboxEvent) -> "DLQEntry":
        return cls(
            id=event.id,
            tenant_id=event.tenant_id,
            aggregate=event.aggregate,
            aggregate_id=event.aggregate_id,
            correlation_id=event.correlation_id,
            type=event.type,
            payload=event.payload,
            attempts=event.attempts,
            max_attempts=event.max_attempts,
            last_error=event.error,
            created_at=event.created_at,
            failed_at=event.last_attempt_at or event.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "aggregate": self.aggregate,
            "aggregate_id": self.aggregate_id,
            "correlation_id": self.correlation_id,
            "type": self.type,
            "payload": self.payload,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None
        }


class DLQManager:
    """
    Manages the Dead Letter Queue.

    Responsibilities:
    - Query DLQ entries
    - Replay entries as new pending rows
    - Purge single or old entries
    - Generate DLQ reports
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        settings: Optional[OutboxSettings] = None,
        store: Optional[OutboxStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.settings = settings or OutboxSettings()
        self.store = store or OutboxStore(db)
        self._clock = clock or _utcnow

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        correlation_id: Optional[str] = None
    ) -> List[DLQEntry]:
        """Get DLQ entries, newest first."""
        rows = await self.store.list_by_status(
            OutboxStatus.DEAD_LETTER, limit=limit, offset=offset, correlation_id=correlation_id
        )
        return [DLQEntry.from_event(row) for row in rows]

    async def get_count(self, correlation_id: Optional[str] = None) -> int:
        """Get total DLQ entry count."""
        return await self.store.count_with_status(OutboxStatus.DEAD_LETTER, correlation_id)

    async def replay_entry(self, entry_id: UUID, operator_id: Optional[str] = None) -> OutboxEvent:
        """
        Queue a dead-letter entry for delivery again.

        A new pending row copies the entry's tenant, aggregate, type, payload
        and correlation id with a fresh attempt budget. The dead-letter row
        stays as the record of the failure.

        Args:
            entry_id: The dead-letter outbox row ID
            operator_id: ID of operator performing the action

        Returns:
            The new pending OutboxEvent

        Raises:
            OutboxNotFoundError: no dead-letter row with this id
        """
        entry = await self.store.get(entry_id)
        if entry is None or entry.status != OutboxStatus.DEAD_LETTER:
            raise OutboxNotFoundError(entry_id, OutboxStatus.DEAD_LETTER.value)

        replay = OutboxEvent(
            tenant_id=entry.tenant_id,
            aggregate=entry.aggregate,
            aggregate_id=entry.aggregate_id,
            type=entry.type,
            payload=entry.payload,
            correlation_id=entry.correlation_id or generate_correlation_id(),
            max_attempts=self.settings.max_attempts,
        )

        async with self.db.transaction() as tx:
            await self.store.insert_many(tx, [replay])

        logger.info(f"DLQ entry {entry_id} replayed as {replay.id} by {operator_id}")
        await self._log_action(entry_id, DLQAction.REPLAY, operator_id, {"replay_id": str(replay.id)})
        return replay

    async def purge_entry(self, entry_id: UUID, operator_id: Optional[str] = None) -> bool:
        """
        Permanently delete a DLQ entry.

        Args:
            entry_id: The dead-letter outbox row ID
            operator_id: ID of operator performing the action

        Returns:
            True if entry was deleted, False if no dead-letter row matched
        """
        success = await self.store.delete(entry_id, OutboxStatus.DEAD_LETTER)

        if success:
            logger.info(f"DLQ entry {entry_id} purged by {operator_id}")
            await self._log_action(entry_id, DLQAction.PURGE, operator_id)

        return success

    async def purge_old(self, days: int = 30, operator_id: Optional[str] = None) -> int:
        """Purge DLQ entries older than specified days."""
        cutoff = self._clock() - timedelta(days=days)
        count = await self.store.delete_older_than(OutboxStatus.DEAD_LETTER, cutoff)

        logger.info(f"DLQ purged {count} entries older than {days} days by {operator_id}")
        await self._log_action(None, DLQAction.PURGE_OLD, operator_id, {"days": days, "count": count})

        return count

    async def get_stats(self) -> Dict[str, Any]:
        """Get DLQ statistics."""
        total = await self.get_count()
        by_type = await self.store.count_by_type(OutboxStatus.DEAD_LETTER)
        oldest = await self.store.oldest_with_status(OutboxStatus.DEAD_LETTER)

        return {
            "total_count": total,
            "by_event_type": by_type,
            "oldest_entry": oldest.isoformat() if oldest else None
        }

    async def _log_action(
        self,
        entry_id: Optional[UUID],
        action: DLQAction,
        operator_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ):
        """Log DLQ action for audit."""
        logger.info(
            f"DLQ action: {action.value} on {entry_id} by {operator_id}",
            extra={
                "audit": True,
                "dlq_action": action.value,
                "outbox_id": str(entry_id) if entry_id else None,
                "operator_id": operator_id,
                **(details or {}),
            },
        )
