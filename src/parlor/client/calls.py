"""Routes relay call events to the one negotiator the client runs at a time."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from parlor.services.errors import CallStateError

from .media import SignalingChannel
from .negotiation import CallNegotiator, CallRole

logger = logging.getLogger(__name__)

NegotiatorFactory = Callable[[str, CallRole], CallNegotiator]

CALL_EVENTS = ("call_initiate", "call_answer", "call_candidate", "call_reject", "call_end", "error")


@dataclass
class IncomingCall:
    """A ringing call waiting for the local user to accept or decline."""

    caller: str
    offer: dict[str, Any]
    candidates: list[dict[str, Any]] = field(default_factory=list)


class CallManager:
    """Owns the current call and the pending incoming one.

    A second incoming call while busy is declined automatically.
    """

    def __init__(
        self,
        signaling: SignalingChannel,
        negotiator_factory: NegotiatorFactory,
        *,
        on_incoming: Callable[[IncomingCall], None] | None = None,
        on_ended: Callable[[CallNegotiator], None] | None = None,
    ) -> None:
        self.signaling = signaling
        self.negotiator_factory = negotiator_factory
        self.on_incoming = on_incoming
        self.on_ended = on_ended
        self.current: CallNegotiator | None = None
        self.incoming: IncomingCall | None = None

    @property
    def busy(self) -> bool:
        return self.incoming is not None or (
            self.current is not None and not self.current.is_terminal
        )

    def attach(self, connection: Any) -> None:
        """Subscribe to call events on a relay connection (once per connection)."""
        for event in CALL_EVENTS:
            connection.on(event, lambda data, _event=event: self.handle_event(_event, data))

    def _active_with(self, peer: str | None) -> CallNegotiator | None:
        current = self.current
        if current is None or current.is_terminal or current.peer_handle != peer:
            return None
        return current

    def _finish(self) -> None:
        current = self.current
        if current is not None and current.is_terminal and self.on_ended is not None:
            self.on_ended(current)

    async def handle_event(self, event: str, data: dict[str, Any]) -> None:
        peer = data.get("from")
        if event == "call_initiate":
            self._on_offer(peer, data.get("signal") or {})
        elif event == "call_answer":
            current = self._active_with(peer)
            if current is not None:
                await current.handle_answer(data.get("signal") or {})
        elif event == "call_candidate":
            await self._on_candidate(peer, data.get("candidate") or {})
        elif event in ("call_end", "call_reject"):
            self._on_remote_end(peer, event, data.get("reason"))
        elif event == "error" and data.get("event") == "call_initiate":
            current = self.current
            if current is not None and not current.is_terminal:
                current.handle_remote_end(data.get("code"))
                self._finish()

    def _on_offer(self, caller: str | None, offer: dict[str, Any]) -> None:
        if not caller:
            return
        if self.busy:
            logger.info("Declining call from %s while busy", caller)
            self.signaling.emit("call_reject", {"to": caller})
            return
        self.incoming = IncomingCall(caller=caller, offer=offer)
        if self.on_incoming is not None:
            self.on_incoming(self.incoming)

    async def _on_candidate(self, peer: str | None, candidate: dict[str, Any]) -> None:
        current = self._active_with(peer)
        if current is not None:
            await current.handle_remote_candidate(candidate)
        elif self.incoming is not None and self.incoming.caller == peer:
            self.incoming.candidates.append(candidate)

    def _on_remote_end(self, peer: str | None, event: str, reason: str | None) -> None:
        if self.incoming is not None and self.incoming.caller == peer:
            logger.info("Incoming call from %s was cancelled", peer)
            self.incoming = None
            return
        current = self._active_with(peer)
        if current is None:
            return
        if event == "call_reject":
            current.handle_remote_reject()
        else:
            current.handle_remote_end(reason)
        self._finish()

    async def start_call(self, peer: str) -> CallNegotiator:
        """Place a call to ``peer``."""
        if self.busy:
            raise CallStateError("Already in a call")
        self.current = self.negotiator_factory(peer, CallRole.CALLER)
        try:
            await self.current.start()
        finally:
            self._finish()
        return self.current

    async def accept(self) -> CallNegotiator:
        """Answer the ringing call."""
        incoming = self.incoming
        if incoming is None:
            raise CallStateError("No incoming call to accept")
        self.incoming = None
        negotiator = self.negotiator_factory(incoming.caller, CallRole.CALLEE)
        self.current = negotiator
        for candidate in incoming.candidates:
            await negotiator.handle_remote_candidate(candidate)
        try:
            await negotiator.start(incoming.offer)
        finally:
            self._finish()
        return negotiator

    def decline(self) -> None:
        """Decline the ringing call."""
        incoming, self.incoming = self.incoming, None
        if incoming is not None:
            self.signaling.emit("call_reject", {"to": incoming.caller})

    def hangup(self) -> None:
        current = self.current
        if current is not None and current.state is not None and not current.is_terminal:
            current.hangup()
            self._finish()
