"""
Outbox Models

Row model for the outbox_events table, producer input model and stats.
"""

import json
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

DEFAULT_MAX_ATTEMPTS = 5

_BASE36 = string.digits + string.ascii_lowercase


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def generate_correlation_id() -> str:
    """Correlation id for events whose producer did not supply one."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"event-{int(time.time() * 1000)}-{suffix}"


def retry_delay_ms(attempts: int, base_ms: int, max_ms: int) -> int:
    """
    Exponential backoff before a failed row becomes deliverable again.

    attempts is the number of attempts made so far (>= 1 after a failure).
    A base of 0 disables backoff: the row is retried on the next poll.
    """
    if base_ms <= 0 or attempts <= 0:
        return 0
    return min(base_ms * (2 ** (attempts - 1)), max_ms)


class OutboxStatus(str, Enum):
    """Status of an outbox row."""
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"  # Exceeded max attempts

    @property
    def is_terminal(self) -> bool:
        return self in (OutboxStatus.PUBLISHED, OutboxStatus.DEAD_LETTER)


def _to_str(value: Any) -> Any:
    return str(value) if isinstance(value, UUID) else value


class OutboxEventCreate(BaseModel):
    """An event a producer queues inside its business transaction."""

    tenant_id: str
    aggregate: str
    aggregate_id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)

    @field_validator("tenant_id", "aggregate_id", "correlation_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return _to_str(value)

    @classmethod
    def create(
        cls,
        tenant_id: str,
        aggregate: str,
        aggregate_id: str,
        event_type: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> "OutboxEventCreate":
        return cls(
            tenant_id=tenant_id,
            aggregate=aggregate,
            aggregate_id=aggregate_id,
            type=event_type,
            payload=payload,
            correlation_id=correlation_id,
        )


class OutboxEvent(BaseModel):
    """A row in the outbox_events table."""

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    aggregate: str
    aggregate_id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    published_at: Optional[datetime] = None

    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    error: Optional[str] = None

    status: OutboxStatus = OutboxStatus.PENDING

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> Any:
        # SQLite TEXT and asyncpg's default jsonb codec both hand back strings
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    @field_validator("tenant_id", "aggregate_id", "correlation_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return _to_str(value)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxEvent":
        return cls.model_validate(row)

    @property
    def can_retry(self) -> bool:
        return self.status == OutboxStatus.FAILED and self.attempts < self.max_attempts

    def is_stale(self, max_age: timedelta = timedelta(hours=24), now: Optional[datetime] = None) -> bool:
        """Pending for longer than max_age; a sign the relay has stalled."""
        now = now or _utcnow()
        return self.status == OutboxStatus.PENDING and now - self.created_at > max_age

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class OutboxStats(BaseModel):
    """Relay statistics for dashboards and alerting."""

    pending: int = 0
    failed: int = 0
    dead_letter: int = 0
    published_today: int = 0
    oldest_pending: Optional[datetime] = None
