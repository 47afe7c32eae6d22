"""User directory endpoints."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, HTTPException, status

from parlor.schemas.user import UserCreate, UserOut

from ..dependencies import RelayDep, RepositoryDep

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserOut])
async def list_users(relay: RelayDep, repository: RepositoryDep) -> list[UserOut]:
    """List every user with their last-seen time and live presence."""
    users = await asyncio.to_thread(repository.list_users)
    online = {session.user_handle for session in await relay.registry.sessions()}
    return [
        UserOut(username=u.handle, last_seen=u.last_seen_at, online=u.handle in online)
        for u in users
    ]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=UserOut)
async def register_user(payload: UserCreate, repository: RepositoryDep) -> UserOut:
    """Register a chat handle. Credentials are managed elsewhere."""
    if await asyncio.to_thread(repository.find_user, payload.username) is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already exists",
        )
    user = await asyncio.to_thread(repository.create_user, payload.username)
    return UserOut(username=user.handle, last_seen=user.last_seen_at)


@router.get("/{handle}", response_model=UserOut)
async def get_user(handle: str, relay: RelayDep, repository: RepositoryDep) -> UserOut:
    """Return one user with presence."""
    user = await asyncio.to_thread(repository.find_user, handle)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserOut(
        username=user.handle,
        last_seen=user.last_seen_at,
        online=await relay.registry.is_online(handle),
    )
