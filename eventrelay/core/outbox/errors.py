"""
Outbox Exceptions
"""

from uuid import UUID


class OutboxError(Exception):
    """Base class for outbox errors."""


class OutboxNotFoundError(OutboxError, LookupError):
    """No outbox row with the given id (and expected status)."""

    def __init__(self, entry_id: UUID, status: str = None):
        self.entry_id = entry_id
        self.status = status
        detail = f" with status {status}" if status else ""
        super().__init__(f"Outbox entry {entry_id}{detail} not found")
