"""Client-side pieces: relay connection, typing debounce and call negotiation."""

from .calls import CallManager, IncomingCall
from .connection import EventSubscriptions, RelayConnection
from .credentials import CredentialFetcher, fallback_servers, parse_ice_servers
from .media import IceServer, MediaConstraints
from .negotiation import CallNegotiator, CallRole, NegotiationState
from .typing_indicator import TypingNotifier

__all__ = [
    "CallManager",
    "CallNegotiator",
    "CallRole",
    "CredentialFetcher",
    "EventSubscriptions",
    "IceServer",
    "IncomingCall",
    "MediaConstraints",
    "NegotiationState",
    "RelayConnection",
    "TypingNotifier",
    "fallback_servers",
    "parse_ice_servers",
]
