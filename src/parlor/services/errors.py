"""Error taxonomy shared by the relay services and the call client."""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base exception raised for relay failures.

    ``code`` is the stable machine identifier sent to clients; ``surface``
    tells the dispatcher whether the originating session should be told.
    """

    code = "relay_error"
    surface = True


class PeerOffline(RelayError):
    """Raised when the target user has no live session."""

    code = "peer_offline"

    def __init__(self, peer: str) -> None:
        super().__init__(f"{peer} is offline")
        self.peer = peer


class Unauthorized(RelayError):
    """Raised when a user tries to delete messages they did not send."""

    code = "unauthorized"


class AlreadyInCall(RelayError):
    """Raised when a call already exists for the user pair."""

    code = "already_in_call"

    def __init__(self, caller: str, callee: str) -> None:
        super().__init__(f"A call between {caller} and {callee} is already in progress")
        self.caller = caller
        self.callee = callee


class StaleEvent(RelayError):
    """Raised for signals that refer to a missing call or an incompatible phase.

    These races are expected; they are logged and dropped, never surfaced.
    """

    code = "stale_event"
    surface = False


class InvalidPayload(RelayError):
    """Raised when an inbound event payload fails validation."""

    code = "invalid_payload"


class MessagePersistError(RelayError):
    """Raised when a message could not be stored.

    The sender is told through ``send_failed``, not an ``error`` frame.
    """

    code = "send_failed"
    surface = False


class StorageUnavailable(RelayError):
    """Raised when the database fails while handling an event."""

    code = "storage_unavailable"


class MediaUnavailable(RelayError):
    """Raised when local audio/video capture cannot be acquired."""

    code = "media_unavailable"


class CredentialFetchFailed(RelayError):
    """Raised internally when the relay credential issuer cannot be used."""

    code = "credential_fetch_failed"
    surface = False


class CallStateError(RelayError):
    """Raised when a call operation is not permitted in the current state."""

    code = "call_state"
