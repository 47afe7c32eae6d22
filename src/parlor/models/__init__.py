"""SQLAlchemy models for the Parlor application."""

from .message import Message, MessageStatus
from .user import User

__all__ = [
    "Message", "MessageStatus",
    "User",
]
