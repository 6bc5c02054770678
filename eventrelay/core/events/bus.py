"""
Event Bus

In-process publish/subscribe for local, non-durable events.

Handlers run sequentially in registration order, on the publisher's event
loop. Each handler is isolated: a failing handler is logged and the
remaining handlers still run. Once every handler has run, publish() raises
EventHandlerError listing the failures, so durable callers such as the
outbox relay can retry.

Usage:
    bus = EventBus()

    async def on_site_published(event: Event) -> None:
        await cache.invalidate(event.payload["url"])

    sub = bus.subscribe("site.published", on_site_published)
    await bus.publish("site.published", {"url": url}, {"tenant_id": tenant_id})
    sub.unsubscribe()
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..observability import create_span, record_counter
from .errors import EventHandlerError, EventTimeoutError, handler_name
from .models import Event, EventMetadata

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Union[Awaitable[None], None]]
EventFilter = Callable[[Event], bool]

DEFAULT_MAX_SUBSCRIPTIONS = 100


class Subscription:
    """Handle returned by EventBus.subscribe."""

    def __init__(self, bus: "EventBus", event_type: str, handler: EventHandler, once: bool = False):
        self.event_type = event_type
        self.handler = handler
        self.once = once
        self.name = handler_name(handler)
        self._bus = bus
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Remove this subscription. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)

    def __repr__(self) -> str:
        return (
            f"Subscription(event_type={self.event_type!r}, handler={self.name!r}, "
            f"once={self.once}, active={self._active})"
        )


class EventBus:
    """
    Registry of subscriptions keyed by event type.

    Constructed explicitly and passed to producers and consumers; there is
    no process-wide instance.
    """

    def __init__(self, max_subscriptions_per_type: int = DEFAULT_MAX_SUBSCRIPTIONS):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self.max_subscriptions_per_type = max_subscriptions_per_type

    async def publish(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        metadata: Optional[Union[EventMetadata, Dict[str, Any]]] = None,
    ) -> Event:
        """
        Publish an event to every subscriber of event_type.

        Args:
            event_type: Dot-namespaced event name (e.g. "site.published")
            payload: Event body
            metadata: EventMetadata or dict; timestamp is filled in and
                tenant_id defaults to "system"

        Returns:
            The delivered Event envelope

        Raises:
            EventHandlerError: one or more handlers failed (all handlers ran)
        """
        event = Event.create(event_type, payload, metadata)
        subscriptions = list(self._subscriptions.get(event_type, ()))

        with create_span(
            f"event.publish.{event_type}",
            {
                "event.type": event_type,
                "event.tenant_id": event.metadata.tenant_id,
                "event.source": event.metadata.source,
                "event.correlation_id": event.metadata.correlation_id or "",
                "event.handlers": len(subscriptions),
            },
        ):
            logger.debug(
                "Publishing event",
                extra={
                    "event_type": event_type,
                    "tenant_id": event.metadata.tenant_id,
                    "correlation_id": event.metadata.correlation_id,
                    "source": event.metadata.source,
                },
            )

            failures: List[Tuple[str, BaseException]] = []
            for subscription in subscriptions:
                # An earlier handler may have removed this one.
                if not subscription.active:
                    continue
                if subscription.once:
                    subscription.unsubscribe()
                try:
                    await self._invoke(subscription, event)
                except Exception as e:
                    failures.append((subscription.name, e))

            record_counter("events_published_total", 1, {"event_type": event_type})

            if failures:
                logger.warning(
                    f"Event {event_type} delivered with {len(failures)} handler failure(s)",
                    extra={
                        "event_type": event_type,
                        "tenant_id": event.metadata.tenant_id,
                        "failed_handlers": [name for name, _ in failures],
                    },
                )
                raise EventHandlerError(event_type, failures)

        return event

    async def _invoke(self, subscription: Subscription, event: Event) -> None:
        with create_span(
            f"event.handle.{event.type}",
            {
                "event.type": event.type,
                "event.tenant_id": event.metadata.tenant_id,
                "event.handler": subscription.name,
            },
        ):
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Event handler error: {subscription.name} on {event.type}: {e}",
                    exc_info=True,
                    extra={
                        "event_type": event.type,
                        "tenant_id": event.metadata.tenant_id,
                        "handler": subscription.name,
                    },
                )
                record_counter(
                    "event_handler_errors_total",
                    1,
                    {"event_type": event.type, "handler": subscription.name},
                )
                raise

        logger.debug(
            "Event handled successfully",
            extra={"event_type": event.type, "handler": subscription.name},
        )

    def subscribe(self, event_type: str, handler: EventHandler, once: bool = False) -> Subscription:
        """
        Register a handler for event_type.

        Args:
            event_type: Event type to listen for
            handler: Sync or async callable taking the Event
            once: Remove the subscription before its first invocation

        Returns:
            Subscription handle with unsubscribe()
        """
        subscription = Subscription(self, event_type, handler, once=once)
        handlers = self._subscriptions.setdefault(event_type, [])
        handlers.append(subscription)

        if len(handlers) > self.max_subscriptions_per_type:
            logger.warning(
                f"{len(handlers)} subscriptions registered for {event_type}; possible subscription leak"
            )

        logger.debug(
            "Event subscription added",
            extra={"event_type": event_type, "handler": subscription.name, "once": once},
        )
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._subscriptions.get(subscription.event_type)
        if not handlers:
            return
        try:
            handlers.remove(subscription)
        except ValueError:
            return
        if not handlers:
            del self._subscriptions[subscription.event_type]

        logger.debug(
            "Event subscription removed",
            extra={"event_type": subscription.event_type, "handler": subscription.name},
        )

    def unsubscribe_all(self, event_type: str) -> None:
        """Drop every handler for an event type."""
        for subscription in self._subscriptions.pop(event_type, []):
            subscription._active = False
        logger.debug("All subscriptions removed for event type", extra={"event_type": event_type})

    async def wait_for_event(
        self,
        event_type: str,
        timeout_ms: float = 30000,
        predicate: Optional[EventFilter] = None,
    ) -> Event:
        """
        Wait for the first event of event_type accepted by predicate.

        The temporary subscription is removed on every exit path: match,
        timeout or cancellation. Events rejected by the predicate leave the
        waiter in place.

        Raises:
            EventTimeoutError: no matching event within timeout_ms
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _waiter(event: Event) -> None:
            if future.done():
                return
            try:
                matched = predicate is None or predicate(event)
            except Exception as e:
                future.set_exception(e)
                subscription.unsubscribe()
                return
            if matched:
                future.set_result(event)
                subscription.unsubscribe()

        subscription = self.subscribe(event_type, _waiter)
        try:
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise EventTimeoutError(event_type, timeout_ms) from None
        finally:
            subscription.unsubscribe()

    def listener_count(self, event_type: str) -> int:
        return len(self._subscriptions.get(event_type, ()))

    def get_stats(self) -> Dict[str, Any]:
        """Subscription counts per event type, split by once/regular."""
        subscriptions: Dict[str, int] = {}
        once_subscriptions: Dict[str, int] = {}

        for event_type, handlers in self._subscriptions.items():
            regular = sum(1 for s in handlers if not s.once)
            once = len(handlers) - regular
            if regular:
                subscriptions[event_type] = regular
            if once:
                once_subscriptions[event_type] = once

        return {
            "total_event_types": len(self._subscriptions),
            "subscriptions": subscriptions,
            "once_subscriptions": once_subscriptions,
        }

    async def shutdown(self) -> None:
        """Remove all subscriptions. Idempotent."""
        if not self._subscriptions:
            return
        logger.info("Shutting down event bus...")
        for handlers in self._subscriptions.values():
            for subscription in handlers:
                subscription._active = False
        self._subscriptions.clear()
        logger.info("Event bus shutdown completed")
