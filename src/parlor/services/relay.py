"""Relay facade tying sessions, messages, presence and calls together.

One ``ChatRelay`` serves every connection in the process. Its inbound
handler table is built once at construction, so a connection never ends up
with duplicate subscriptions regardless of how often it reconnects.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from parlor.db.time import utcnow
from parlor.repositories.message_repo import MessageRepository
from parlor.schemas.events import (
    INBOUND_SCHEMAS,
    CallCandidateIn,
    CallPeerIn,
    CallSignalIn,
    EventPayload,
    MarkAsReadIn,
    MessagesDeletedIn,
    SendMessageIn,
    TypingIn,
)
from parlor.services.call_relay import CallSignalingRelay
from parlor.services.errors import InvalidPayload, RelayError, StorageUnavailable
from parlor.services.hub import Connection, ConnectionHub
from parlor.services.message_pipeline import MessagePipeline
from parlor.services.presence import PresenceBroadcaster
from parlor.services.session_registry import SessionRegistry, new_connection_id

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[None]]


class ChatRelay:
    """Entry point used by the transport layer for every connection."""

    def __init__(
        self,
        repository: MessageRepository | None = None,
        *,
        ring_timeout: float | None = None,
    ) -> None:
        self.registry = SessionRegistry()
        self.hub = ConnectionHub()
        self.repository = repository or MessageRepository()
        self.messages = MessagePipeline(self.registry, self.hub, self.repository)
        self.presence = PresenceBroadcaster(self.registry, self.hub)
        self.calls = CallSignalingRelay(self.registry, self.hub, ring_timeout=ring_timeout)
        self._handlers: dict[str, Handler] = {
            "typing": self._on_typing,
            "send_message": self._on_send_message,
            "mark_as_read": self._on_mark_as_read,
            "messages_deleted": self._on_messages_deleted,
            "call_initiate": self._on_call_initiate,
            "call_answer": self._on_call_answer,
            "call_candidate": self._on_call_candidate,
            "call_reject": self._on_call_reject,
            "call_end": self._on_call_end,
            "call_connected": self._on_call_connected,
        }
        self._teardowns: set[asyncio.Future[None]] = set()

    @property
    def events(self) -> frozenset[str]:
        return frozenset(self._handlers)

    # Connection lifecycle

    async def connect(self, user_handle: str, connection: Connection) -> str:
        """Register a freshly accepted connection and announce presence.

        A previous session for the same handle is superseded: its calls end
        and its connection is force-closed.
        """
        connection_id = new_connection_id()
        self.hub.attach(connection_id, connection)
        superseded = await self.registry.register(user_handle, connection_id)
        if superseded is not None:
            await self.calls.end_all_for(user_handle, reason="superseded")
            await self.hub.close(superseded)
        logger.info("%s connected as %s", user_handle, connection_id)
        await self.presence.announce_online(user_handle)
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Tear down a connection; safe to call more than once.

        The teardown runs to completion even when the calling task is
        cancelled, so calls never outlive the session that carried them.
        """
        teardown = asyncio.ensure_future(self._teardown(connection_id))
        self._teardowns.add(teardown)
        teardown.add_done_callback(self._teardowns.discard)
        await asyncio.shield(teardown)

    async def wait_idle(self) -> None:
        """Wait for connection teardowns that are still running."""
        if self._teardowns:
            await asyncio.gather(*self._teardowns, return_exceptions=True)

    async def _teardown(self, connection_id: str) -> None:
        self.hub.detach(connection_id)
        handle = await self.registry.unregister(connection_id)
        if handle is None:
            logger.debug("Connection %s closed after being superseded", connection_id)
            return

        last_seen = utcnow()
        await self.calls.end_all_for(handle, reason="peer_disconnected")
        await self.presence.announce_offline(handle, last_seen)
        try:
            await asyncio.to_thread(self.repository.touch_last_seen, handle, last_seen)
        except SQLAlchemyError:
            logger.error("Failed to record last seen for %s", handle, exc_info=True)
        logger.info("%s disconnected (%s)", handle, connection_id)

    # Dispatch

    async def dispatch(self, connection_id: str, event: str, data: Any) -> None:
        """Validate and route one inbound event.

        Surfaced relay errors are reported to the originating connection as
        an ``error`` event; everything else is logged and dropped.
        """
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring unknown event %r from %s", event, connection_id)
            return
        handle = await self.registry.handle_for(connection_id)
        if handle is None:
            logger.debug("Ignoring %s from unregistered connection %s", event, connection_id)
            return

        try:
            payload = self._parse(event, data)
            try:
                await handler(handle, payload)
            except SQLAlchemyError as exc:
                logger.error("Storage failure handling %s from %s", event, handle, exc_info=True)
                raise StorageUnavailable("Storage is unavailable; please retry") from exc
        except RelayError as exc:
            if not exc.surface:
                logger.info("Dropped %s from %s: %s", event, handle, exc)
                return
            logger.info("Rejected %s from %s: %s", event, handle, exc)
            await self.hub.emit(
                connection_id,
                "error",
                {"code": exc.code, "message": str(exc), "event": event},
            )

    def _parse(self, event: str, data: Any) -> EventPayload:
        schema = INBOUND_SCHEMAS[event]
        try:
            return schema.model_validate(data if data is not None else {})
        except ValidationError as exc:
            raise InvalidPayload(f"Invalid payload for {event}: {exc.error_count()} error(s)") from exc

    # Handlers

    async def _on_typing(self, handle: str, payload: TypingIn) -> None:
        await self.presence.relay_typing(handle, payload.receiver, payload.is_typing)

    async def _on_send_message(self, handle: str, payload: SendMessageIn) -> None:
        await self.messages.send(
            handle, payload.receiver, payload.message, client_id=payload.client_id
        )

    async def _on_mark_as_read(self, handle: str, payload: MarkAsReadIn) -> None:
        await self.messages.acknowledge_read(payload.message_id, payload.sender, reader=handle)

    async def _on_messages_deleted(self, handle: str, payload: MessagesDeletedIn) -> None:
        if payload.clear_with is not None:
            removed = await self.messages.clear_own(handle, payload.clear_with)
        else:
            removed = await self.messages.delete(payload.message_ids or [], handle)
        await self.messages.mirror_deletions(removed, also_notify=handle)

    async def _on_call_initiate(self, handle: str, payload: CallSignalIn) -> None:
        await self.calls.initiate(handle, payload.to, payload.signal)

    async def _on_call_answer(self, handle: str, payload: CallSignalIn) -> None:
        await self.calls.accept(handle, payload.to, payload.signal)

    async def _on_call_candidate(self, handle: str, payload: CallCandidateIn) -> None:
        await self.calls.relay_candidate(handle, payload.to, payload.candidate)

    async def _on_call_reject(self, handle: str, payload: CallPeerIn) -> None:
        await self.calls.reject(handle, payload.to)

    async def _on_call_end(self, handle: str, payload: CallPeerIn) -> None:
        await self.calls.end(handle, payload.to)

    async def _on_call_connected(self, handle: str, payload: CallPeerIn) -> None:
        await self.calls.mark_active(handle, payload.to)
