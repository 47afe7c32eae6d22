"""SQLAlchemy model for chat user handles."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from parlor.db.session import Base
from parlor.db.time import utcnow


class User(Base):
    """A chat participant identified by an opaque handle.

    Credentials live outside the relay; only the handle and the last time the
    user was seen online are stored here.
    """

    __tablename__ = "chat_user"

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
