# src/parlor/services/__init__.py
"""Business logic services for the Parlor relay."""

from .call_relay import CallPhase, CallSession, CallSignalingRelay, CallSweeper
from .hub import ConnectionHub
from .message_pipeline import MessagePipeline
from .presence import PresenceBroadcaster
from .relay import ChatRelay
from .session_registry import Session, SessionRegistry

__all__ = [
    "CallPhase",
    "CallSession",
    "CallSignalingRelay",
    "CallSweeper",
    "ChatRelay",
    "ConnectionHub",
    "MessagePipeline",
    "PresenceBroadcaster",
    "Session",
    "SessionRegistry",
]
