"""Interfaces of the platform collaborators used by the call client.

Capture devices, peer connections and video sinks are provided by the host
(a browser bridge, aiortc, a native SDK). The negotiation logic only talks
to them through these protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class IceServer:
    """A relay server descriptor handed to the peer connection."""

    urls: list[str]
    username: str | None = None
    credential: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"urls": list(self.urls)}
        if self.username is not None:
            data["username"] = self.username
        if self.credential is not None:
            data["credential"] = self.credential
        return data


@dataclass(frozen=True)
class MediaConstraints:
    audio: bool = True
    video: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


class MediaTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None: ...


class MediaStream(Protocol):
    def get_tracks(self) -> list[MediaTrack]: ...


class MediaProvider(Protocol):
    """Acquires local capture; raises on denial or missing devices."""

    async def acquire(self, constraints: MediaConstraints) -> MediaStream: ...


class VideoSink(Protocol):
    """A surface rendering a stream (local preview or remote view)."""

    def attach(self, stream: MediaStream) -> None: ...

    def detach(self) -> None: ...


class PeerListener(Protocol):
    """Callbacks a peer connection reports into."""

    def on_local_candidate(self, candidate: dict[str, Any]) -> None: ...

    def on_connection_state(self, state: str) -> None: ...

    def on_remote_stream(self, stream: MediaStream) -> None: ...


class PeerConnection(Protocol):
    async def create_offer(self) -> dict[str, Any]: ...

    async def create_answer(self) -> dict[str, Any]: ...

    async def set_local_description(self, description: dict[str, Any]) -> None: ...

    async def set_remote_description(self, description: dict[str, Any]) -> None: ...

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


class PeerConnectionFactory(Protocol):
    def __call__(
        self,
        ice_servers: list[IceServer],
        local_stream: MediaStream,
        listener: PeerListener,
    ) -> PeerConnection: ...


class SignalingChannel(Protocol):
    """Non-blocking emitter of named relay events."""

    def emit(self, event: str, data: dict[str, Any]) -> None: ...
