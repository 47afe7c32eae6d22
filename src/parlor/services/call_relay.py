"""Call signaling relay and its stale-call sweeper.

The relay forwards opaque offer/answer/candidate payloads between two users
and keeps one authoritative phase record per unordered user pair:

    ringing -> connecting -> active -> ended
    ringing -> ended                  (reject, cancel, timeout)
    connecting | active -> ended      (hangup, failure, disconnect)

``idle`` is never materialized and ``ended`` records are removed at once, so
a pair with no record is idle. Signals that do not fit the current phase are
raised as StaleEvent, which the dispatcher logs and drops.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from parlor.core.settings import settings
from parlor.db.time import utcnow
from parlor.services.errors import AlreadyInCall, InvalidPayload, PeerOffline, StaleEvent
from parlor.services.hub import ConnectionHub
from parlor.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class CallPhase(str, enum.Enum):
    """Server-side phase of a call session."""

    RINGING = "ringing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"


LIVE_PHASES = frozenset({CallPhase.RINGING, CallPhase.CONNECTING, CallPhase.ACTIVE})
SWEEPABLE_PHASES = frozenset({CallPhase.RINGING, CallPhase.CONNECTING})


def pair_key(a: str, b: str) -> frozenset[str]:
    """Return the unordered key for a user pair."""
    return frozenset((a, b))


@dataclass
class CallSession:
    """Phase record for one call negotiation between two users."""

    caller: str
    callee: str
    phase: CallPhase
    offer: dict[str, Any] | None = None
    answer: dict[str, Any] | None = None
    pending_candidates: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    phase_changed_at: float = field(default_factory=time.monotonic)

    def other(self, handle: str) -> str:
        return self.callee if handle == self.caller else self.caller

    def involves(self, handle: str) -> bool:
        return handle in (self.caller, self.callee)


class CallSignalingRelay:
    """Routes call signals and enforces the call phase machine."""

    def __init__(
        self,
        registry: SessionRegistry,
        hub: ConnectionHub,
        *,
        ring_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.hub = hub
        self.ring_timeout = (
            settings.call_ring_timeout_seconds if ring_timeout is None else ring_timeout
        )
        self._clock = clock
        self._lock = asyncio.Lock()
        self._calls: dict[frozenset[str], CallSession] = {}

    def _set_phase(self, record: CallSession, phase: CallPhase) -> None:
        logger.debug(
            "Call %s<->%s: %s -> %s", record.caller, record.callee, record.phase.value, phase.value
        )
        record.phase = phase
        record.phase_changed_at = self._clock()

    async def _notify(self, handle: str, event: str, data: dict[str, Any]) -> bool:
        return await self.hub.emit(await self.registry.resolve(handle), event, data)

    async def get(self, a: str, b: str) -> CallSession | None:
        """Return a copy of the live record for a pair, if any."""
        async with self._lock:
            record = self._calls.get(pair_key(a, b))
            return replace(record, pending_candidates=list(record.pending_candidates)) if record else None

    async def active_count(self) -> int:
        async with self._lock:
            return len(self._calls)

    async def initiate(self, caller: str, callee: str, offer: dict[str, Any]) -> CallSession:
        """Ring ``callee`` with ``offer``.

        Raises PeerOffline when the callee has no live session and
        AlreadyInCall when the pair already has a call; neither creates a
        record.
        """
        if caller == callee:
            raise InvalidPayload("Cannot call yourself")
        callee_conn = await self.registry.resolve(callee)
        if callee_conn is None:
            raise PeerOffline(callee)

        key = pair_key(caller, callee)
        async with self._lock:
            if key in self._calls:
                raise AlreadyInCall(caller, callee)
            record = CallSession(
                caller=caller,
                callee=callee,
                phase=CallPhase.RINGING,
                offer=offer,
                phase_changed_at=self._clock(),
            )
            self._calls[key] = record

        delivered = await self.hub.emit(
            callee_conn, "call_initiate", {"from": caller, "signal": offer}
        )
        if not delivered:
            async with self._lock:
                if self._calls.get(key) is record:
                    del self._calls[key]
            raise PeerOffline(callee)

        logger.info("Call %s -> %s ringing", caller, callee)
        return record

    async def accept(self, callee: str, caller: str, answer: dict[str, Any]) -> None:
        """Forward the callee's answer; valid only while ringing."""
        async with self._lock:
            record = self._calls.get(pair_key(caller, callee))
            if record is None or record.phase is not CallPhase.RINGING or record.callee != callee:
                raise StaleEvent(f"Ignoring answer from {callee} to {caller}")
            record.answer = answer
            record.pending_candidates.clear()
            self._set_phase(record, CallPhase.CONNECTING)

        await self._notify(caller, "call_answer", {"from": callee, "signal": answer})

    async def relay_candidate(self, sender: str, to: str, candidate: dict[str, Any]) -> None:
        """Forward an ICE candidate; dropped once the call is gone."""
        async with self._lock:
            record = self._calls.get(pair_key(sender, to))
            if record is None or record.phase not in LIVE_PHASES:
                raise StaleEvent(f"Candidate from {sender} to {to} after teardown")
            if record.phase is CallPhase.RINGING:
                record.pending_candidates.append(candidate)

        await self._notify(to, "call_candidate", {"from": sender, "candidate": candidate})

    async def mark_active(self, reporter: str, peer: str) -> None:
        """Record that a client reached a media-flowing connection."""
        async with self._lock:
            record = self._calls.get(pair_key(reporter, peer))
            if record is None or record.phase not in (CallPhase.CONNECTING, CallPhase.ACTIVE):
                raise StaleEvent(f"Connected report from {reporter} outside negotiation")
            if record.phase is CallPhase.CONNECTING:
                self._set_phase(record, CallPhase.ACTIVE)

    async def reject(self, callee: str, caller: str) -> None:
        """Decline a ringing call and tell the caller (best-effort)."""
        async with self._lock:
            key = pair_key(caller, callee)
            record = self._calls.get(key)
            if record is None or record.phase is not CallPhase.RINGING or record.callee != callee:
                raise StaleEvent(f"Ignoring reject from {callee} to {caller}")
            del self._calls[key]
            self._set_phase(record, CallPhase.ENDED)

        logger.info("Call %s -> %s rejected", caller, callee)
        await self._notify(caller, "call_reject", {"from": callee})

    async def end(self, who: str, peer: str, *, reason: str = "hangup") -> bool:
        """End the pair's call from any live phase.

        Idempotent: both sides may hang up at once, and the second call finds
        no record and returns False.
        """
        async with self._lock:
            record = self._calls.pop(pair_key(who, peer), None)
            if record is None:
                return False
            self._set_phase(record, CallPhase.ENDED)

        logger.info("Call %s<->%s ended by %s (%s)", record.caller, record.callee, who, reason)
        await self._notify(peer, "call_end", {"from": who, "reason": reason})
        return True

    async def end_all_for(self, handle: str, *, reason: str) -> list[CallSession]:
        """End every call involving ``handle`` and notify the remaining parties."""
        async with self._lock:
            keys = [key for key, record in self._calls.items() if record.involves(handle)]
            ended = [self._calls.pop(key) for key in keys]
            for record in ended:
                self._set_phase(record, CallPhase.ENDED)

        for record in ended:
            await self._notify(record.other(handle), "call_end", {"from": handle, "reason": reason})
        return ended

    async def sweep(self) -> list[CallSession]:
        """End calls stuck in ringing or connecting beyond the ring timeout."""
        now = self._clock()
        async with self._lock:
            expired = [
                key
                for key, record in self._calls.items()
                if record.phase in SWEEPABLE_PHASES
                and now - record.phase_changed_at > self.ring_timeout
            ]
            swept = [self._calls.pop(key) for key in expired]
            for record in swept:
                self._set_phase(record, CallPhase.ENDED)

        for record in swept:
            logger.info("Call %s<->%s timed out", record.caller, record.callee)
            await self._notify(record.caller, "call_end", {"from": record.callee, "reason": "timeout"})
            await self._notify(record.callee, "call_end", {"from": record.caller, "reason": "timeout"})
        return swept


class CallSweeper:
    """Periodically sweeps stale call sessions in the background."""

    def __init__(self, relay: CallSignalingRelay, interval: float | None = None) -> None:
        self.relay = relay
        self.interval = max(
            0.05,
            float(settings.call_sweep_interval_seconds if interval is None else interval),
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.relay.sweep()
            except (OSError, ConnectionError, RuntimeError) as e:
                logger.warning("CallSweeper encountered error: %s", e)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                continue
