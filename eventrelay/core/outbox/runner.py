"""
Outbox Relay Runner

Standalone process that runs the outbox relay as a background service.
Designed to be run in a separate container for production deployments.

Usage:
    python -m eventrelay.core.outbox.runner
    eventrelay-outbox

Environment Variables:
    DATABASE_BACKEND / DATABASE_URL / SQLITE_PATH: Store to poll
    OUTBOX_POLL_INTERVAL_MS: Polling interval (default: 5000)
    OUTBOX_BATCH_SIZE: Batch size for processing (default: 100)
    OUTBOX_MAX_ATTEMPTS: Max delivery attempts (default: 5)
    OUTBOX_RETRY_SWEEP_INTERVAL_MS: Periodic retry sweep, 0 disables (default: 0)
    OUTBOX_SUBSCRIBERS: Comma-separated "module:function" hooks; each is
        called with the EventBus to register subscribers
    OTEL_EXPORTER_OTLP_ENDPOINT: Export traces and metrics over OTLP gRPC
    LOG_LEVEL: Logging level (default: INFO)
    LOG_FORMAT: "json" or "text" (default: json)
"""

import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Any, Callable, Dict, List, Optional

from ... import __version__
from ..config import OutboxSettings
from ..database.adapter import DatabaseAdapter
from ..events.bus import EventBus
from ..observability import configure_logging, init_metrics, init_tracing
from ..system import EventSystem

logger = logging.getLogger(__name__)

SubscriberHook = Callable[[EventBus], Any]


def load_subscriber_hooks(spec: Optional[str]) -> List[SubscriberHook]:
    """
    Resolve "package.module:function" entries.

    Raises:
        ValueError: an entry is not of the form module:function
        ImportError / AttributeError: the hook cannot be found
    """
    hooks = []
    for entry in (spec or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        module_name, sep, attr = entry.partition(":")
        if not sep or not module_name or not attr:
            raise ValueError(f"Invalid subscriber hook {entry!r}, expected module:function")
        module = importlib.import_module(module_name)
        hooks.append(getattr(module, attr))
    return hooks


class OutboxRunner:
    """
    Manages the event system lifecycle with graceful shutdown.
    """

    def __init__(
        self,
        system: Optional[EventSystem] = None,
        hooks: Optional[List[SubscriberHook]] = None,
    ):
        self.system = system or EventSystem(DatabaseAdapter(), OutboxSettings(), EventBus())
        self.hooks = hooks or []
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False
        self._sweep_task: Optional[asyncio.Task] = None

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def _retry_sweep(self, interval: float) -> None:
        """Periodically reset retryable failed rows to pending."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.system.relay.retry_failed_events()

    async def run(self, install_signal_handlers: bool = True):
        """Run the relay until shutdown is requested."""
        settings = self.system.settings

        logger.info("Starting Outbox Relay Runner")
        logger.info(f"  Poll interval: {settings.poll_interval_ms}ms")
        logger.info(f"  Batch size: {settings.batch_size}")
        logger.info(f"  Max attempts: {settings.max_attempts}")

        if install_signal_handlers:
            self._setup_signal_handlers()

        for hook in self.hooks:
            result = hook(self.system.bus)
            if asyncio.iscoroutine(result):
                await result
        logger.info(f"Registered {len(self.hooks)} subscriber hook(s): {self.system.bus.get_stats()}")

        try:
            await self.system.initialize()
            logger.info("Outbox Relay is running")

            if settings.retry_sweep_interval_ms > 0:
                self._sweep_task = asyncio.create_task(
                    self._retry_sweep(settings.retry_sweep_interval_ms / 1000.0)
                )

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Outbox Relay error: {e}", exc_info=True)
            raise
        finally:
            # Graceful shutdown
            logger.info("Stopping Outbox Relay")
            if self._sweep_task:
                self._sweep_task.cancel()
                try:
                    await self._sweep_task
                except asyncio.CancelledError:
                    pass
                self._sweep_task = None
            await self.system.shutdown()
            logger.info("Outbox Relay stopped")

    async def health_check(self) -> Dict[str, Any]:
        """Return health status for monitoring."""
        relay = self.system.relay
        return {
            "status": "healthy" if relay.is_running else "unhealthy",
            "running": relay.is_running,
            "shutdown_requested": self._shutdown_requested
        }


async def main():
    """Main entry point."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_FORMAT", "json").lower() == "json",
        service_name="eventrelay-outbox",
    )

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint:
        init_tracing("eventrelay-outbox", __version__, otlp_endpoint=otlp_endpoint)
        init_metrics("eventrelay-outbox", otlp_endpoint=otlp_endpoint)

    settings = OutboxSettings()
    if not settings.relay_active:
        logger.error("Outbox relay is disabled (OUTBOX_ENABLED / OUTBOX_RELAY_ENABLED)")
        sys.exit(1)

    runner = OutboxRunner(hooks=load_subscriber_hooks(os.getenv("OUTBOX_SUBSCRIBERS")))
    await runner.run()


def cli():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
