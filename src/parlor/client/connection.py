"""WebSocket connection from a client to the chat relay."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[None] | None]


class EventSubscriptions:
    """Event handlers grouped by connection.

    Each event is subscribed at most once per connection, and all of a
    connection's handlers are dropped together when it goes away, so a
    reconnect never stacks duplicate handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, dict[str, Handler]] = {}

    def attach(self, key: str, event: str, handler: Handler) -> bool:
        handlers = self._handlers.setdefault(key, {})
        if event in handlers:
            return False
        handlers[event] = handler
        return True

    def detach_all(self, key: str) -> int:
        return len(self._handlers.pop(key, {}))

    def handler_for(self, key: str, event: str) -> Handler | None:
        return self._handlers.get(key, {}).get(event)

    def events(self, key: str) -> list[str]:
        return sorted(self._handlers.get(key, {}))


class RelayConnection:
    """A single logical connection for ``handle``.

    ``emit`` never blocks; frames are queued and written by a background
    task in the order they were emitted.
    """

    def __init__(
        self,
        url: str,
        handle: str,
        *,
        connect: Callable[..., Any] = websockets.connect,
        open_timeout: float = 10.0,
        subscriptions: EventSubscriptions | None = None,
    ) -> None:
        self.url = url
        self.handle = handle
        self._connect = connect
        self.open_timeout = open_timeout
        self.subscriptions = subscriptions or EventSubscriptions()
        self.connection_id: str | None = None
        self._ws: Any = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._closed = asyncio.Event()

    @property
    def endpoint(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'handle': self.handle})}"

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed.is_set()

    async def open(self) -> str:
        if self.connection_id is not None:
            raise RuntimeError("Connection already opened")
        self._ws = await asyncio.wait_for(
            self._connect(self.endpoint, ping_interval=30, ping_timeout=10, close_timeout=5),
            timeout=self.open_timeout,
        )
        self.connection_id = uuid.uuid4().hex
        self._tasks = [
            asyncio.create_task(self._read_loop(), name=f"relay-read-{self.handle}"),
            asyncio.create_task(self._write_loop(), name=f"relay-write-{self.handle}"),
        ]
        logger.info("Connected to relay as %s", self.handle)
        return self.connection_id

    def on(self, event: str, handler: Handler) -> bool:
        """Subscribe ``handler`` to ``event``; repeat subscriptions are ignored."""
        if self.connection_id is None:
            raise RuntimeError("Subscribe after the connection is opened")
        return self.subscriptions.attach(self.connection_id, event, handler)

    def emit(self, event: str, data: dict[str, Any]) -> None:
        if self._closed.is_set():
            logger.debug("Dropping %s on closed connection", event)
            return
        self._outbox.put_nowait(json.dumps({"event": event, "data": data}))

    async def _write_loop(self) -> None:
        try:
            while True:
                message = await self._outbox.get()
                await self._ws.send(message)
        except ConnectionClosed:
            logger.info("Relay connection for %s closed while sending", self.handle)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring malformed frame from relay")
                    continue
                if not isinstance(message, dict) or not isinstance(message.get("event"), str):
                    continue
                data = message.get("data")
                await self._dispatch(message["event"], data if isinstance(data, dict) else {})
        except ConnectionClosed:
            logger.info("Relay connection for %s closed", self.handle)
        finally:
            self._closed.set()

    async def _dispatch(self, event: str, data: dict[str, Any]) -> None:
        if self.connection_id is None:
            return
        handler = self.subscriptions.handler_for(self.connection_id, event)
        if handler is None:
            return
        try:
            result = handler(data)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Handler for %s failed", event)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        if self.connection_id is not None:
            self.subscriptions.detach_all(self.connection_id)
        self._closed.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except ConnectionClosed:
                pass
