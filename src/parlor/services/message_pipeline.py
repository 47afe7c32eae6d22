"""Message pipeline: persist, route, and advance delivery status.

Persistence happens before routing, so a message is durable even when the
live push is lost. Pushes are fire-and-forget; a receiver that was offline
catches up through a history fetch, never through a push-on-connect.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from parlor.core.settings import settings
from parlor.models import MessageStatus
from parlor.repositories.message_repo import MessageRepository, StoredMessage
from parlor.schemas.message import DeletedMessage, MessageOut
from parlor.services.errors import (
    InvalidPayload,
    MessagePersistError,
    StaleEvent,
    Unauthorized,
)
from parlor.services.hub import ConnectionHub
from parlor.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def serialize_message(message: StoredMessage) -> dict[str, Any]:
    """Serialize a stored message into its wire payload."""
    return MessageOut.model_validate(message).model_dump(mode="json")


def serialize_deleted(messages: Iterable[StoredMessage]) -> list[dict[str, Any]]:
    return [DeletedMessage.model_validate(m).model_dump(mode="json") for m in messages]


class MessagePipeline:
    """Accepts sends, read acknowledgements and deletions."""

    def __init__(
        self,
        registry: SessionRegistry,
        hub: ConnectionHub,
        repository: MessageRepository,
    ) -> None:
        self.registry = registry
        self.hub = hub
        self.repository = repository

    async def _db(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(func, *args, **kwargs)

    def _validate_body(self, body: str) -> str:
        text = (body or "").strip()
        if not text:
            raise InvalidPayload("Message body must not be empty")
        if len(text) > settings.message_max_length:
            raise InvalidPayload(
                f"Message body exceeds {settings.message_max_length} characters"
            )
        return text

    async def send(
        self,
        sender: str,
        receiver: str,
        body: str,
        *,
        client_id: str | None = None,
    ) -> StoredMessage:
        """Persist a message and push it to the receiver if they are online.

        The sender always receives an echo carrying the final status:
        ``delivered`` when the live push succeeded, ``sent`` otherwise.
        """
        text = self._validate_body(body)
        try:
            known = await self._db(self.repository.find_user, receiver) is not None
            if known:
                message = await self._db(self.repository.save_message, sender, receiver, text)
        except SQLAlchemyError as exc:
            logger.error("Failed to persist message from %s to %s", sender, receiver, exc_info=True)
            await self.hub.emit(
                await self.registry.resolve(sender),
                "send_failed",
                {"clientId": client_id, "receiver": receiver, "reason": "persist_failed"},
            )
            raise MessagePersistError("Message could not be saved; please resend") from exc
        if not known:
            raise InvalidPayload(f"Unknown receiver {receiver}")

        receiver_conn = await self.registry.resolve(receiver)
        if receiver_conn is not None:
            delivered_view = message.with_status(MessageStatus.DELIVERED)
            pushed = await self.hub.emit(
                receiver_conn, "receive_message", serialize_message(delivered_view)
            )
            if pushed:
                message = await self._mark_delivered(message)

        echo = serialize_message(message)
        if client_id is not None:
            echo["clientId"] = client_id
        await self.hub.emit(await self.registry.resolve(sender), "receive_message", echo)
        return message

    async def _mark_delivered(self, message: StoredMessage) -> StoredMessage:
        if await self._db(self.repository.advance_status, message.id, MessageStatus.DELIVERED):
            return message.with_status(MessageStatus.DELIVERED)
        # A read acknowledgement may already have overtaken the upgrade.
        current = await self._db(self.repository.get_message, message.id)
        return current if current is not None else message

    async def acknowledge_read(
        self,
        message_id: int,
        original_sender: str,
        *,
        reader: str | None = None,
    ) -> bool:
        """Mark a message read and notify its sender.

        Idempotent: acknowledging an already-read message changes nothing and
        sends no second notification. Returns True when the status changed.
        """
        message = await self._db(self.repository.get_message, message_id)
        if message is None:
            raise StaleEvent(f"Message {message_id} no longer exists")
        if reader is not None and message.receiver != reader:
            raise Unauthorized("Only the receiver can mark a message as read")
        if message.sender != original_sender:
            logger.debug(
                "Read receipt for %s named sender %s, stored sender is %s",
                message_id,
                original_sender,
                message.sender,
            )

        changed = await self._db(self.repository.advance_status, message_id, MessageStatus.READ)
        if not changed:
            return False

        await self.hub.emit(
            await self.registry.resolve(message.sender),
            "message_read",
            {"messageId": message_id},
        )
        return True

    async def delete(self, message_ids: Iterable[int], requester: str) -> list[StoredMessage]:
        """Delete messages owned by ``requester``.

        Raises Unauthorized, removing nothing, when any targeted message was
        sent by someone else.
        """
        targets = await self._db(self.repository.find_messages, list(message_ids))
        foreign = [m.id for m in targets if m.sender != requester]
        if foreign:
            logger.info("Rejected delete by %s of messages %s", requester, foreign)
            raise Unauthorized("You can only delete your own messages")
        return await self._db(self.repository.delete_messages, [m.id for m in targets])

    async def clear_own(self, requester: str, peer: str) -> list[StoredMessage]:
        """Delete every message ``requester`` sent to ``peer``."""
        targets = await self._db(self.repository.find_sent_to, requester, peer)
        return await self._db(self.repository.delete_messages, [m.id for m in targets])

    async def mirror_deletions(
        self,
        removed: Iterable[StoredMessage],
        *,
        also_notify: str | None = None,
    ) -> None:
        """Push ``messages_deleted`` to each affected receiver's live session."""
        removed = list(removed)
        by_receiver: dict[str, list[StoredMessage]] = defaultdict(list)
        for message in removed:
            by_receiver[message.receiver].append(message)
        if also_notify is not None and removed and also_notify not in by_receiver:
            by_receiver[also_notify] = removed

        for handle, messages in by_receiver.items():
            await self.hub.emit(
                await self.registry.resolve(handle),
                "messages_deleted",
                {"deletedMessages": serialize_deleted(messages)},
            )

    async def history(
        self,
        user: str,
        peer: str,
        *,
        page: int = 0,
        limit: int | None = None,
    ) -> list[StoredMessage]:
        """Return one page of the conversation without touching statuses."""
        size = min(limit or settings.history_page_size, settings.history_max_page_size)
        return await self._db(
            self.repository.find_messages_between, user, peer, page=page, limit=size
        )
