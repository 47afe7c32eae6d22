"""Data access helpers for chat users and messages."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from parlor.db.session import SessionLocal
from parlor.db.time import utcnow
from parlor.models import Message, MessageStatus, User

__all__ = ["MessageRepository", "StoredMessage", "UserRecord"]


@dataclass(frozen=True)
class StoredMessage:
    """Detached snapshot of a persisted message."""

    id: int
    sender: str
    receiver: str
    body: str
    created_at: datetime
    status: MessageStatus

    @classmethod
    def from_row(cls, row: Message) -> StoredMessage:
        return cls(
            id=row.id,
            sender=row.sender,
            receiver=row.receiver,
            body=row.body,
            created_at=row.created_at,
            status=MessageStatus(row.status),
        )

    def with_status(self, status: MessageStatus) -> StoredMessage:
        return StoredMessage(
            id=self.id,
            sender=self.sender,
            receiver=self.receiver,
            body=self.body,
            created_at=self.created_at,
            status=status,
        )


@dataclass(frozen=True)
class UserRecord:
    """Detached snapshot of a user handle."""

    handle: str
    last_seen_at: datetime


class MessageRepository:
    """Thin wrapper around database access for users and messages.

    Every call opens and closes its own session so the repository can be
    shared between concurrently running connection tasks.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    # Users

    def find_user(self, handle: str) -> UserRecord | None:
        """Return the user for a handle, or None when it is unknown."""
        with self._session_factory() as db:
            user = db.get(User, handle)
            if user is None:
                return None
            return UserRecord(handle=user.handle, last_seen_at=user.last_seen_at)

    def create_user(self, handle: str) -> UserRecord:
        """Insert a new user handle."""
        now = utcnow()
        with self._session_factory() as db:
            db.add(User(handle=handle, created_at=now, last_seen_at=now))
            db.commit()
        return UserRecord(handle=handle, last_seen_at=now)

    def list_users(self) -> list[UserRecord]:
        """Return all users ordered by handle."""
        with self._session_factory() as db:
            users = db.scalars(select(User).order_by(User.handle)).all()
            return [UserRecord(handle=u.handle, last_seen_at=u.last_seen_at) for u in users]

    def touch_last_seen(self, handle: str, when: datetime | None = None) -> None:
        """Record the moment a user was last seen online."""
        with self._session_factory() as db:
            db.execute(
                update(User)
                .where(User.handle == handle)
                .values(last_seen_at=when or utcnow())
            )
            db.commit()

    # Messages

    def save_message(self, sender: str, receiver: str, body: str) -> StoredMessage:
        """Persist a new message with status ``sent``."""
        with self._session_factory() as db:
            row = Message(
                sender=sender,
                receiver=receiver,
                body=body,
                created_at=utcnow(),
                status=MessageStatus.SENT.value,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return StoredMessage.from_row(row)

    def get_message(self, message_id: int) -> StoredMessage | None:
        with self._session_factory() as db:
            row = db.get(Message, message_id)
            return StoredMessage.from_row(row) if row is not None else None

    def advance_status(self, message_id: int, status: MessageStatus) -> bool:
        """Move a message forward to ``status``.

        The update is conditional on the current status ranking below the
        target, so a message can never move backward. Returns True when the
        row changed.
        """
        allowed = [s.value for s in status.predecessors()]
        if not allowed:
            return False
        with self._session_factory() as db:
            result = db.execute(
                update(Message)
                .where(Message.id == message_id, Message.status.in_(allowed))
                .values(status=status.value)
            )
            db.commit()
            return result.rowcount == 1

    def find_messages_between(
        self,
        a: str,
        b: str,
        *,
        page: int = 0,
        limit: int = 50,
    ) -> list[StoredMessage]:
        """Return one page of the conversation between two users.

        Pages count backward from the newest message; each page is returned
        oldest-first.
        """
        with self._session_factory() as db:
            rows = db.scalars(
                select(Message)
                .where(
                    or_(
                        and_(Message.sender == a, Message.receiver == b),
                        and_(Message.sender == b, Message.receiver == a),
                    )
                )
                .order_by(Message.created_at.desc(), Message.id.desc())
                .offset(max(page, 0) * limit)
                .limit(limit)
            ).all()
            return [StoredMessage.from_row(row) for row in reversed(rows)]

    def find_messages(self, message_ids: Iterable[int]) -> list[StoredMessage]:
        ids = list(set(message_ids))
        if not ids:
            return []
        with self._session_factory() as db:
            rows = db.scalars(
                select(Message).where(Message.id.in_(ids)).order_by(Message.id)
            ).all()
            return [StoredMessage.from_row(row) for row in rows]

    def find_sent_to(self, sender: str, receiver: str) -> list[StoredMessage]:
        """Return every message ``sender`` sent to ``receiver``."""
        with self._session_factory() as db:
            rows = db.scalars(
                select(Message)
                .where(Message.sender == sender, Message.receiver == receiver)
                .order_by(Message.id)
            ).all()
            return [StoredMessage.from_row(row) for row in rows]

    def delete_messages(self, message_ids: Iterable[int]) -> list[StoredMessage]:
        """Delete messages by id and return the ones that actually existed."""
        ids = list(set(message_ids))
        if not ids:
            return []
        with self._session_factory() as db:
            rows = db.scalars(
                select(Message).where(Message.id.in_(ids)).order_by(Message.id)
            ).all()
            removed = [StoredMessage.from_row(row) for row in rows]
            db.execute(delete(Message).where(Message.id.in_([m.id for m in removed])))
            db.commit()
            return removed
