"""
Event Models

Pydantic models for the in-process event envelope.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator

SYSTEM_TENANT_ID = "system"
DEFAULT_SOURCE = "event-bus"


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class EventMetadata(BaseModel):
    """Envelope metadata. tenant_id falls back to the system tenant."""

    tenant_id: str = SYSTEM_TENANT_ID
    timestamp: datetime = Field(default_factory=_utcnow)
    source: str = DEFAULT_SOURCE
    correlation_id: Optional[str] = None
    version: Optional[str] = None

    @field_validator("tenant_id", mode="before")
    @classmethod
    def _default_tenant(cls, value: Any) -> Any:
        if value is None or value == "":
            return SYSTEM_TENANT_ID
        return str(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _default_timestamp(cls, value: Any) -> Any:
        return _utcnow() if value is None else value

    @field_validator("source", mode="before")
    @classmethod
    def _default_source(cls, value: Any) -> Any:
        return DEFAULT_SOURCE if not value else value

    @field_validator("correlation_id", mode="before")
    @classmethod
    def _stringify_correlation(cls, value: Any) -> Any:
        return None if value is None else str(value)


class Event(BaseModel):
    """A published event: dot-namespaced type, producer-defined payload, metadata."""

    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def tenant_id(self) -> str:
        return self.metadata.tenant_id

    @property
    def correlation_id(self) -> Optional[str]:
        return self.metadata.correlation_id

    @classmethod
    def create(
        cls,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        metadata: Optional[Any] = None,
    ) -> "Event":
        """Build an envelope from loose metadata (None, dict or EventMetadata)."""
        if metadata is None:
            meta = EventMetadata()
        elif isinstance(metadata, EventMetadata):
            meta = metadata
        else:
            meta = EventMetadata(**metadata)
        return cls(type=event_type, payload=dict(payload or {}), metadata=meta)
