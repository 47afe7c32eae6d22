"""Shared API dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, WebSocket, status

from parlor.repositories.message_repo import MessageRepository
from parlor.services.relay import ChatRelay


def get_relay(request: Request) -> ChatRelay:
    """Return the process-wide relay created at application startup."""
    relay: ChatRelay | None = getattr(request.app.state, "relay", None)
    if relay is None:  # pragma: no cover - lifespan always installs one
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay not ready",
        )
    return relay


def get_ws_relay(websocket: WebSocket) -> ChatRelay:
    """WebSocket flavour of :func:`get_relay`."""
    return websocket.app.state.relay


def get_repository(relay: Annotated[ChatRelay, Depends(get_relay)]) -> MessageRepository:
    """Return the repository shared with the relay."""
    return relay.repository


RelayDep = Annotated[ChatRelay, Depends(get_relay)]
RepositoryDep = Annotated[MessageRepository, Depends(get_repository)]
