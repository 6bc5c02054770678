"""
Outbox Lifecycle Management

Integrates the event system with the FastAPI application lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ..system import EventSystem

logger = logging.getLogger(__name__)


@asynccontextmanager
async def outbox_lifespan(system: EventSystem) -> AsyncIterator[EventSystem]:
    """
    Lifespan context manager for the event system.

    The relay only starts when OUTBOX_ENABLED and OUTBOX_RELAY_ENABLED
    are both true; in multi-instance deployments only one instance
    should run it.

    Usage in FastAPI:
        from eventrelay.core.outbox.lifecycle import outbox_lifespan

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan(system):
                yield

        app = FastAPI(lifespan=lifespan)
    """
    logger.info("Starting event system...")
    await system.initialize()
    try:
        yield system
    finally:
        logger.info("Stopping event system...")
        await system.shutdown()
