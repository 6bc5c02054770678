"""
Event Bus Exceptions
"""

from typing import Any, Callable, List, Optional, Tuple


class EventBusError(Exception):
    """Base class for event bus errors."""


class EventHandlerError(EventBusError):
    """
    One or more subscribers raised while handling a published event.

    Raised by EventBus.publish after every subscriber has run, so a
    failing handler never prevents delivery to the others.
    """

    def __init__(self, event_type: str, failures: List[Tuple[str, BaseException]]):
        self.event_type = event_type
        self.failures = failures
        names = ", ".join(f"{name}: {exc}" for name, exc in failures)
        super().__init__(
            f"{len(failures)} handler(s) failed for event {event_type}: {names}"
        )

    @property
    def handler_names(self) -> List[str]:
        return [name for name, _ in self.failures]


class EventTimeoutError(EventBusError, TimeoutError):
    """No matching event arrived before the wait_for_event deadline."""

    def __init__(self, event_type: str, timeout_ms: float):
        self.event_type = event_type
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout waiting for event: {event_type} ({timeout_ms}ms)")


class EventValidationError(EventBusError, ValueError):
    """An event payload failed its registered schema."""

    def __init__(self, event_type: str, errors: Optional[List[Any]] = None, message: Optional[str] = None):
        self.event_type = event_type
        self.errors = errors or []
        super().__init__(message or f"Invalid payload for event {event_type}: {self.errors}")


def handler_name(handler: Callable) -> str:
    """Best-effort readable identity for a subscriber callable."""
    name = getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None)
    if name:
        return name
    return type(handler).__name__
