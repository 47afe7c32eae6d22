"""Transport hub holding the live connection objects.

The hub knows nothing about users; it delivers named event frames to a
connection id. Delivery is best-effort: failures are logged and reported to
the caller as ``False`` so one broken socket never raises into another
user's task.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SUPERSEDED_CLOSE_CODE = 4000


class Connection(Protocol):
    """Minimal interface of a live transport connection."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


def frame(event: str, data: dict[str, Any]) -> dict[str, Any]:
    """Build the wire frame for a named event."""
    return {"event": event, "data": data}


class ConnectionHub:
    """Owns connection id -> connection objects for the current process."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def attach(self, connection_id: str, connection: Connection) -> None:
        self._connections[connection_id] = connection

    def detach(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def emit(self, connection_id: str | None, event: str, data: dict[str, Any]) -> bool:
        """Send ``event`` to one connection. Returns True when the frame was written."""
        if connection_id is None:
            return False
        connection = self._connections.get(connection_id)
        if connection is None:
            logger.debug("Dropping %s for unknown connection %s", event, connection_id)
            return False
        try:
            await connection.send_json(frame(event, data))
        except Exception as exc:
            logger.warning("Failed to deliver %s to %s: %s", event, connection_id, exc)
            return False
        return True

    async def close(self, connection_id: str, code: int = SUPERSEDED_CLOSE_CODE) -> None:
        """Force-close and forget a connection."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        try:
            await connection.close(code=code)
        except Exception as exc:
            logger.warning("Error while closing connection %s: %s", connection_id, exc)
