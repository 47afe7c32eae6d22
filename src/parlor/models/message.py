# src/parlor/models/message.py
"""Models describing one-to-one chat messages."""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from parlor.db.session import Base
from parlor.db.time import utcnow


class MessageStatus(str, enum.Enum):
    """Delivery state of a message. Only ever moves forward."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def predecessors(self) -> list[MessageStatus]:
        """Return the statuses a message may advance from to reach this one."""
        return [status for status in MessageStatus if status.rank < self.rank]


_STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


class Message(Base):
    """Plain-text message exchanged between two users."""

    __tablename__ = "chat_message"
    __table_args__ = (
        Index("ix_chat_message_pair", "sender", "receiver", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender: Mapped[str] = mapped_column(String(64), ForeignKey("chat_user.handle"), nullable=False)
    receiver: Mapped[str] = mapped_column(String(64), ForeignKey("chat_user.handle"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        default=MessageStatus.SENT.value,
        nullable=False,
    )
