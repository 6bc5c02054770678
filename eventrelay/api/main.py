"""
eventrelay Operations API
=========================

FastAPI app exposing health and outbox operator endpoints. The event
system is started and stopped with the app lifespan.

Usage:
    uvicorn eventrelay.api.main:app
    python -m eventrelay.api.main
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..core.outbox.errors import OutboxNotFoundError
from ..core.outbox.lifecycle import outbox_lifespan
from ..core.system import EventSystem
from .ops import router as ops_router

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI):
    """Map package exceptions to HTTP responses."""

    @app.exception_handler(OutboxNotFoundError)
    async def not_found_handler(request: Request, exc: OutboxNotFoundError):
        logger.warning(f"Not found: {exc}", extra={"path": request.url.path})
        return JSONResponse(
            status_code=404,
            content={"error": {"code": "NOT_FOUND", "message": str(exc)}}
        )


def create_app(system: Optional[EventSystem] = None) -> FastAPI:
    """
    Build the ops app around an event system.

    The system is initialized on startup and shut down on exit.
    """
    system = system or EventSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with outbox_lifespan(system):
            yield

    app = FastAPI(
        title="eventrelay",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.event_system = system

    register_error_handlers(app)
    app.include_router(ops_router)

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        """Event system health: database, relay, bus and outbox backlog."""
        return await system.health()

    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "eventrelay.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8090")),
    )
