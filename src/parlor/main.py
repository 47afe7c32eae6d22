# src/parlor/main.py
"""Main entry point for the Parlor application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from parlor.api.v1 import messages_router, socket_router, users_router
from parlor.core.settings import settings
from parlor.db.session import create_tables
from parlor.repositories.message_repo import MessageRepository
from parlor.services.call_relay import CallSweeper
from parlor.services.relay import ChatRelay

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(repository: MessageRepository | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        repository: Optional repository to back the relay. When omitted the
            default database is used and its tables are created on startup.
    """
    app = FastAPI(
        title=f"{settings.app_name} API",
        description="One-to-one chat relay with presence, typing and call signaling",
        version=settings.app_version,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    # Add GZip middleware for compression
    app.add_middleware(GZipMiddleware)

    # Include API routers
    app.include_router(users_router, prefix="/api/v1")
    app.include_router(messages_router, prefix="/api/v1")
    app.include_router(socket_router, prefix="/api/v1")

    @app.on_event("startup")
    async def on_startup() -> None:
        if repository is None:
            create_tables()
        relay = ChatRelay(repository)
        sweeper = CallSweeper(relay.calls)
        await sweeper.start()
        app.state.relay = relay
        app.state.call_sweeper = sweeper
        logger.info("%s relay started", settings.app_name)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        sweeper: CallSweeper | None = getattr(app.state, "call_sweeper", None)
        if sweeper:
            await sweeper.stop()
        relay: ChatRelay | None = getattr(app.state, "relay", None)
        if relay:
            await relay.wait_idle()

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic information about the API."""
        return {
            "name": f"{settings.app_name} API",
            "version": settings.app_version,
            "websocket": "/api/v1/ws?handle=<username>",
            "docs": "/docs",
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("parlor.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
