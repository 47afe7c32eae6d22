# src/parlor/api/v1/endpoints/messages.py
"""Message history and deletion endpoints."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status

from parlor.core.settings import settings
from parlor.schemas.message import (
    ClearChatRequest,
    DeletedMessage,
    DeleteMessagesRequest,
    DeleteMessagesResponse,
)
from parlor.services.errors import Unauthorized
from parlor.services.message_pipeline import serialize_message

from ..dependencies import RelayDep, RepositoryDep

router = APIRouter(prefix="/messages", tags=["messages"])


async def _require_user(repository: RepositoryDep, handle: str) -> None:
    if await asyncio.to_thread(repository.find_user, handle) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {handle} not found",
        )


@router.get("/{handle}/{peer}")
async def get_history(
    handle: str,
    peer: str,
    relay: RelayDep,
    repository: RepositoryDep,
    page: int = Query(0, ge=0),
    limit: int = Query(settings.history_page_size, ge=1, le=settings.history_max_page_size),
) -> list[dict[str, Any]]:
    """Return one page of the conversation between two users, oldest first."""
    await _require_user(repository, handle)
    await _require_user(repository, peer)
    messages = await relay.messages.history(handle, peer, page=page, limit=limit)
    return [serialize_message(message) for message in messages]


@router.delete("", response_model=DeleteMessagesResponse)
async def delete_messages(
    payload: DeleteMessagesRequest,
    relay: RelayDep,
) -> DeleteMessagesResponse:
    """Delete messages sent by the requester and mirror the removal to receivers."""
    try:
        removed = await relay.messages.delete(payload.message_ids, payload.user_id)
    except Unauthorized as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    await relay.messages.mirror_deletions(removed)
    return DeleteMessagesResponse(
        message="Messages deleted successfully",
        deleted_messages=[DeletedMessage.model_validate(m) for m in removed],
    )


@router.delete("/clear-chat", response_model=DeleteMessagesResponse)
async def clear_chat(
    payload: ClearChatRequest,
    relay: RelayDep,
    repository: RepositoryDep,
) -> DeleteMessagesResponse:
    """Delete every message the requester sent to the other user."""
    await _require_user(repository, payload.user_id)
    removed = await relay.messages.clear_own(payload.user_id, payload.other_user_id)
    await relay.messages.mirror_deletions(removed)
    return DeleteMessagesResponse(
        message="Chat cleared successfully",
        deleted_messages=[DeletedMessage.model_validate(m) for m in removed],
    )
