"""WebSocket transport for the chat relay.

Each connection runs as one task on the shared event loop. Frames are JSON
objects of the form ``{"event": <name>, "data": {...}}`` in both directions.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from parlor.services.relay import ChatRelay

from ..dependencies import get_ws_relay

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _split_frame(frame: Any) -> tuple[str | None, Any]:
    if not isinstance(frame, dict):
        return None, None
    event = frame.get("event")
    return (event if isinstance(event, str) else None), frame.get("data")


@router.websocket("/ws")
async def relay_socket(
    websocket: WebSocket,
    relay: Annotated[ChatRelay, Depends(get_ws_relay)],
    handle: str = Query(..., min_length=1, max_length=64),
) -> None:
    """Serve one relay connection for ``handle``.

    Unknown handles are refused with policy-violation close code 1008.
    """
    if await asyncio.to_thread(relay.repository.find_user, handle) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown user")
        logger.warning("Relay socket rejected: unknown handle %s", handle)
        return

    await websocket.accept()
    connection_id = await relay.connect(handle, websocket)
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                logger.debug("Ignoring non-JSON frame from %s", handle)
                continue
            event, data = _split_frame(frame)
            if event is None:
                logger.debug("Ignoring malformed frame from %s", handle)
                continue
            await relay.dispatch(connection_id, event, data)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.disconnect(connection_id)
