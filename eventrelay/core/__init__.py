"""
eventrelay Core Package

Database access, event bus, transactional outbox and observability.
"""

from . import database
from . import events
from . import outbox

__all__ = ["database", "events", "outbox"]
