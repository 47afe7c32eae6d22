"""Client-side call negotiation state machine.

One ``CallNegotiator`` drives a single call attempt from local media
acquisition to teardown::

    AcquiringMedia -> FetchingCredentials -> Initiating -> AwaitingAnswer -> Negotiating
                                          -> AwaitingAnswer (callee)      -> Negotiating
    Negotiating -> Connected -> Closing -> Closed
    any non-terminal state -> Failed

The state is the single source of truth for the call: there are no separate
accepted/muted/connected flags. Closing and Failed both run the same release
sequence exactly once, and every step of it runs even when an earlier step
raises.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from typing import Any, Protocol

from parlor.core.settings import settings
from parlor.services.errors import CallStateError, MediaUnavailable

from .credentials import fallback_servers
from .media import (
    IceServer,
    MediaConstraints,
    MediaProvider,
    MediaStream,
    PeerConnection,
    PeerConnectionFactory,
    SignalingChannel,
    VideoSink,
)

logger = logging.getLogger(__name__)


class NegotiationState(str, enum.Enum):
    ACQUIRING_MEDIA = "acquiring_media"
    FETCHING_CREDENTIALS = "fetching_credentials"
    INITIATING = "initiating"
    AWAITING_ANSWER = "awaiting_answer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class CallRole(str, enum.Enum):
    CALLER = "caller"
    CALLEE = "callee"


TERMINAL_STATES = frozenset({NegotiationState.CLOSED, NegotiationState.FAILED})
MEDIA_CONTROL_STATES = frozenset({NegotiationState.NEGOTIATING, NegotiationState.CONNECTED})
TRANSPORT_FAILURES = frozenset({"failed", "disconnected"})
PRE_OFFER_STATES = frozenset(
    {
        NegotiationState.ACQUIRING_MEDIA,
        NegotiationState.FETCHING_CREDENTIALS,
        NegotiationState.INITIATING,
    }
)


class CredentialSource(Protocol):
    async def fetch(self) -> list[IceServer]: ...


class CallNegotiator:
    """Negotiates one call with ``peer_handle`` through the signaling relay."""

    def __init__(
        self,
        local_handle: str,
        peer_handle: str,
        role: CallRole,
        *,
        signaling: SignalingChannel,
        media: MediaProvider,
        peer_factory: PeerConnectionFactory,
        credentials: CredentialSource,
        local_sink: VideoSink | None = None,
        remote_sink: VideoSink | None = None,
        constraints: MediaConstraints | None = None,
        credential_timeout: float | None = None,
        on_state_change: Callable[[NegotiationState], None] | None = None,
    ) -> None:
        self.local_handle = local_handle
        self.peer_handle = peer_handle
        self.role = role
        self.signaling = signaling
        self.media = media
        self.peer_factory = peer_factory
        self.credentials = credentials
        self.local_sink = local_sink
        self.remote_sink = remote_sink
        self.constraints = constraints or MediaConstraints()
        self.credential_timeout = (
            settings.ice_credentials_timeout_seconds
            if credential_timeout is None
            else credential_timeout
        )
        self.on_state_change = on_state_change

        self.state: NegotiationState | None = None
        self.history: list[NegotiationState] = []
        self.failure: BaseException | None = None
        self.ice_servers: list[IceServer] = []

        self._stream: MediaStream | None = None
        self._peer: PeerConnection | None = None
        self._remote_description_set = False
        self._pending_candidates: list[dict[str, Any]] = []
        self._outgoing_candidates: list[dict[str, Any]] = []
        self._released = False

    # State helpers

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    @property
    def muted(self) -> bool:
        tracks = self._tracks("audio")
        return bool(tracks) and not any(track.enabled for track in tracks)

    @property
    def camera_enabled(self) -> bool:
        return any(track.enabled for track in self._tracks("video"))

    def _enter(self, state: NegotiationState) -> None:
        logger.debug(
            "Call %s<->%s: %s -> %s",
            self.local_handle,
            self.peer_handle,
            self.state.value if self.state else "-",
            state.value,
        )
        self.state = state
        self.history.append(state)
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _tracks(self, kind: str | None = None) -> list[Any]:
        if self._stream is None:
            return []
        return [t for t in self._stream.get_tracks() if kind is None or t.kind == kind]

    def _emit(self, event: str, **data: Any) -> None:
        self.signaling.emit(event, {"to": self.peer_handle, **data})

    # Setup

    async def start(self, remote_offer: dict[str, Any] | None = None) -> NegotiationState:
        """Run setup up to the point where the remote side must respond.

        The caller ends in AwaitingAnswer; the callee, which must pass the
        received offer, ends in Negotiating. Raises MediaUnavailable after
        releasing everything when local capture cannot be acquired.
        """
        if self.state is not None:
            raise CallStateError(f"Negotiation already started ({self.state.value})")
        if self.role is CallRole.CALLEE and remote_offer is None:
            raise CallStateError("Answering a call requires the remote offer")

        self._enter(NegotiationState.ACQUIRING_MEDIA)
        try:
            stream = await self.media.acquire(self.constraints)
        except Exception as exc:
            failure = MediaUnavailable(f"Camera or microphone unavailable: {exc}")
            self._fail(failure)
            raise failure from exc
        if self.is_terminal:
            # Hung up while the device prompt was open.
            for track in stream.get_tracks():
                track.stop()
            return self.state
        self._stream = stream
        if self.local_sink is not None:
            self.local_sink.attach(stream)

        self._enter(NegotiationState.FETCHING_CREDENTIALS)
        self.ice_servers = await self._fetch_credentials()
        if self.is_terminal:
            return self.state

        try:
            self._peer = self.peer_factory(self.ice_servers, stream, self)
            if self.role is CallRole.CALLER:
                await self._send_offer()
            else:
                await self._send_answer(remote_offer or {})
        except Exception as exc:
            logger.exception("Call setup with %s failed", self.peer_handle)
            self._fail(exc)
        return self.state

    async def _fetch_credentials(self) -> list[IceServer]:
        try:
            return await asyncio.wait_for(self.credentials.fetch(), timeout=self.credential_timeout)
        except TimeoutError:
            logger.info("Credential fetch timed out, using fallback servers")
            return fallback_servers()
        except Exception:
            logger.warning("Credential fetch failed, using fallback servers", exc_info=True)
            return fallback_servers()

    async def _send_offer(self) -> None:
        self._enter(NegotiationState.INITIATING)
        offer = await self._peer.create_offer()
        if self.is_terminal:
            return
        await self._peer.set_local_description(offer)
        if self.is_terminal:
            return
        self._emit("call_initiate", signal=offer)
        self._enter(NegotiationState.AWAITING_ANSWER)
        # The relay only knows the call once the offer is out.
        for candidate in self._outgoing_candidates:
            self._emit("call_candidate", candidate=candidate)
        self._outgoing_candidates.clear()

    async def _send_answer(self, offer: dict[str, Any]) -> None:
        self._enter(NegotiationState.AWAITING_ANSWER)
        await self._apply_remote_description(offer)
        if self.is_terminal:
            return
        answer = await self._peer.create_answer()
        await self._peer.set_local_description(answer)
        if self.is_terminal:
            return
        self._emit("call_answer", signal=answer)
        self._enter(NegotiationState.NEGOTIATING)

    async def _apply_remote_description(self, description: dict[str, Any]) -> None:
        if self._peer is None:
            return
        await self._peer.set_remote_description(description)
        self._remote_description_set = True
        while self._pending_candidates and self._peer is not None:
            await self._peer.add_ice_candidate(self._pending_candidates.pop(0))

    # Remote signals

    async def handle_answer(self, answer: dict[str, Any]) -> bool:
        """Apply the callee's answer. Late or duplicate answers are ignored."""
        if self.role is not CallRole.CALLER or self.state is not NegotiationState.AWAITING_ANSWER:
            logger.debug("Ignoring answer from %s in state %s", self.peer_handle, self.state)
            return False
        try:
            await self._apply_remote_description(answer)
        except Exception as exc:
            logger.exception("Applying answer from %s failed", self.peer_handle)
            self._fail(exc)
            return False
        if self.is_terminal:
            return False
        self._enter(NegotiationState.NEGOTIATING)
        return True

    async def handle_remote_candidate(self, candidate: dict[str, Any]) -> None:
        """Apply a remote candidate, queueing it until a remote description exists."""
        if self.is_terminal:
            return
        if self._peer is None or not self._remote_description_set:
            self._pending_candidates.append(candidate)
            return
        try:
            await self._peer.add_ice_candidate(candidate)
        except Exception:
            logger.warning("Rejected ICE candidate from %s", self.peer_handle, exc_info=True)

    def handle_remote_end(self, reason: str | None = None) -> None:
        """The peer hung up, declined, or the relay ended the call."""
        if self.is_terminal or self.state is NegotiationState.CLOSING:
            return
        logger.info("Call with %s ended remotely (%s)", self.peer_handle, reason or "end")
        self._close(notify=False)

    def handle_remote_reject(self) -> None:
        self.handle_remote_end("rejected")

    # Peer connection callbacks

    def on_local_candidate(self, candidate: dict[str, Any]) -> None:
        if self.is_terminal:
            return
        if self.role is CallRole.CALLER and self.state in PRE_OFFER_STATES:
            self._outgoing_candidates.append(candidate)
            return
        self._emit("call_candidate", candidate=candidate)

    def on_connection_state(self, state: str) -> None:
        if self.state not in MEDIA_CONTROL_STATES:
            return
        if state == "connected" and self.state is NegotiationState.NEGOTIATING:
            self._enter(NegotiationState.CONNECTED)
            self._emit("call_connected")
        elif state in TRANSPORT_FAILURES:
            self._fail(ConnectionError(f"Peer transport {state}"))

    def on_remote_stream(self, stream: MediaStream) -> None:
        if self.remote_sink is not None and not self.is_terminal:
            self.remote_sink.attach(stream)

    # Local controls

    def _require_media_controls(self) -> None:
        if self.state not in MEDIA_CONTROL_STATES:
            raise CallStateError("Media controls are only available during a call")

    def toggle_mute(self) -> bool:
        """Flip the local audio tracks. Returns True when now muted."""
        self._require_media_controls()
        mute = not self.muted
        for track in self._tracks("audio"):
            track.enabled = not mute
        return self.muted

    def toggle_camera(self) -> bool:
        """Flip the local video tracks. Returns True when the camera is on."""
        self._require_media_controls()
        enable = not self.camera_enabled
        for track in self._tracks("video"):
            track.enabled = enable
        return self.camera_enabled

    def hangup(self) -> None:
        """End the call locally and tell the peer."""
        if self.is_terminal or self.state is NegotiationState.CLOSING:
            return
        self._close(notify=True)

    # Teardown

    def _close(self, *, notify: bool) -> None:
        self._enter(NegotiationState.CLOSING)
        self._release(notify=notify)
        self._enter(NegotiationState.CLOSED)

    def _fail(self, reason: BaseException) -> None:
        if self.is_terminal:
            return
        logger.warning("Call with %s failed: %s", self.peer_handle, reason)
        self.failure = reason
        self._enter(NegotiationState.FAILED)
        self._release(notify=True)

    def _release(self, *, notify: bool) -> None:
        if self._released:
            return
        self._released = True

        if notify:
            try:
                self._emit("call_end")
            except Exception:
                logger.exception("Failed to notify %s of call end", self.peer_handle)

        for track in self._tracks():
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop %s track", getattr(track, "kind", "media"))
        self._stream = None

        for sink in (self.local_sink, self.remote_sink):
            if sink is None:
                continue
            try:
                sink.detach()
            except Exception:
                logger.exception("Failed to detach video sink")

        peer, self._peer = self._peer, None
        self._pending_candidates.clear()
        self._outgoing_candidates.clear()
        if peer is not None:
            try:
                peer.close()
            except Exception:
                logger.exception("Failed to close peer connection")
