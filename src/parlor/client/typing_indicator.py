"""Client-side typing indicator debounce."""

from __future__ import annotations

import asyncio

from parlor.core.settings import settings

from .media import SignalingChannel


class TypingNotifier:
    """Emits ``typing`` once per keystroke burst and clears it after inactivity."""

    def __init__(
        self,
        signaling: SignalingChannel,
        peer: str,
        *,
        window: float | None = None,
    ) -> None:
        self.signaling = signaling
        self.peer = peer
        self.window = settings.typing_debounce_seconds if window is None else window
        self.is_typing = False
        self._timer: asyncio.TimerHandle | None = None

    def _send(self, is_typing: bool) -> None:
        self.is_typing = is_typing
        self.signaling.emit("typing", {"receiver": self.peer, "isTyping": is_typing})

    def keystroke(self) -> None:
        """Record a keystroke; must be called from the running event loop."""
        if not self.is_typing:
            self._send(True)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.window, self._expire)

    def _expire(self) -> None:
        self._timer = None
        if self.is_typing:
            self._send(False)

    def stop(self) -> None:
        """Clear the indicator immediately, e.g. after the message is sent."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.is_typing:
            self._send(False)
