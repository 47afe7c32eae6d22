"""In-memory registry of live user sessions.

The registry is the only cross-task mutable state in the relay. Every read
and mutation runs under one ``asyncio.Lock`` so connection tasks observe a
linearized view; callers never see the underlying maps.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from parlor.db.time import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Binding between a user handle and one transport connection."""

    user_handle: str
    connection_id: str
    connected_at: datetime = field(default_factory=utcnow)


def new_connection_id() -> str:
    """Return a fresh opaque connection identifier."""
    return uuid.uuid4().hex


class SessionRegistry:
    """Maps each user handle to at most one live connection (last connect wins)."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._by_handle: dict[str, Session] = {}
        self._by_connection: dict[str, str] = {}

    async def register(self, user_handle: str, connection_id: str) -> str | None:
        """Bind ``user_handle`` to ``connection_id``.

        Returns the superseded connection id, if any, so the caller can
        force-close it.
        """
        async with self._lock:
            previous = self._by_handle.get(user_handle)
            self._by_handle[user_handle] = Session(user_handle, connection_id)
            self._by_connection[connection_id] = user_handle
            superseded = None
            if previous is not None and previous.connection_id != connection_id:
                self._by_connection.pop(previous.connection_id, None)
                superseded = previous.connection_id
        if superseded:
            logger.info("Session for %s superseded %s", user_handle, superseded)
        return superseded

    async def resolve(self, user_handle: str) -> str | None:
        """Return the live connection id for a handle, or None when offline."""
        async with self._lock:
            session = self._by_handle.get(user_handle)
            return session.connection_id if session is not None else None

    async def unregister(self, connection_id: str) -> str | None:
        """Remove the mapping for ``connection_id`` if it is still current.

        A disconnect that arrives after a reconnect already replaced the
        mapping leaves the newer session untouched. Returns the handle that
        went offline, or None.
        """
        async with self._lock:
            handle = self._by_connection.pop(connection_id, None)
            if handle is None:
                return None
            session = self._by_handle.get(handle)
            if session is None or session.connection_id != connection_id:
                return None
            del self._by_handle[handle]
            return handle

    async def handle_for(self, connection_id: str) -> str | None:
        """Return the handle currently bound to ``connection_id``."""
        async with self._lock:
            return self._by_connection.get(connection_id)

    async def sessions(self) -> list[Session]:
        """Return a snapshot of every live session."""
        async with self._lock:
            return list(self._by_handle.values())

    async def is_online(self, user_handle: str) -> bool:
        return await self.resolve(user_handle) is not None
