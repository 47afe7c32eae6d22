"""Presence and typing fan-out.

Presence changes go to every other live session; typing state goes only to
the named peer. Both are best-effort with no retry.
"""

from __future__ import annotations

import logging
from datetime import datetime

from parlor.db.time import utcnow
from parlor.services.hub import ConnectionHub
from parlor.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    """Broadcasts online/offline status and relays typing indicators."""

    def __init__(self, registry: SessionRegistry, hub: ConnectionHub) -> None:
        self.registry = registry
        self.hub = hub

    async def _broadcast(self, exclude_handle: str, data: dict[str, object]) -> int:
        delivered = 0
        for session in await self.registry.sessions():
            if session.user_handle == exclude_handle:
                continue
            if await self.hub.emit(session.connection_id, "user_status", data):
                delivered += 1
        return delivered

    async def announce_online(self, user_handle: str) -> int:
        """Tell every other live session that ``user_handle`` connected."""
        return await self._broadcast(user_handle, {"username": user_handle, "status": "online"})

    async def announce_offline(self, user_handle: str, last_seen_at: datetime | None = None) -> int:
        """Tell every other live session that ``user_handle`` went offline."""
        seen = last_seen_at or utcnow()
        return await self._broadcast(
            user_handle,
            {"username": user_handle, "status": "offline", "lastSeen": seen.isoformat()},
        )

    async def relay_typing(self, user_handle: str, peer_handle: str, is_typing: bool) -> bool:
        """Forward a typing indicator to ``peer_handle`` only."""
        peer_conn = await self.registry.resolve(peer_handle)
        if peer_conn is None:
            logger.debug("Typing from %s dropped, %s is offline", user_handle, peer_handle)
            return False
        return await self.hub.emit(
            peer_conn,
            "typing",
            {"username": user_handle, "isTyping": is_typing},
        )
