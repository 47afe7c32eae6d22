# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable, Generator, Iterator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from parlor.db.session import Base
from parlor.main import create_app
from parlor.repositories.message_repo import MessageRepository
from parlor.services.relay import ChatRelay

TEST_DB_URL = "sqlite://"

TEST_HANDLES = ("alice", "bob", "carol")


class FakeConnection:
    """Records frames the hub writes; optionally fails every send."""

    def __init__(self, *, fail: bool = False) -> None:
        self.frames: list[dict[str, Any]] = []
        self.closed_with: int | None = None
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.frames.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def events(self) -> list[str]:
        return [f["event"] for f in self.frames]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [f["data"] for f in self.frames if f["event"] == event]

    def clear(self) -> None:
        self.frames.clear()


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def repository(session_factory: sessionmaker[Session]) -> MessageRepository:
    return MessageRepository(session_factory)


@pytest.fixture()
def users(repository: MessageRepository) -> tuple[str, ...]:
    """Register the standard test handles."""
    for handle in TEST_HANDLES:
        repository.create_user(handle)
    return TEST_HANDLES


@pytest.fixture()
def make_connection() -> Callable[..., FakeConnection]:
    return FakeConnection


@pytest.fixture()
def relay(repository: MessageRepository, users: tuple[str, ...]) -> ChatRelay:
    return ChatRelay(repository, ring_timeout=30)


@pytest.fixture()
def online(relay: ChatRelay) -> Callable[..., Any]:
    """Connect handles to the relay with fake connections.

    Returns ``{handle: (connection_id, FakeConnection)}`` with frames
    produced by the connects themselves already cleared.
    """

    async def _connect(*handles: str) -> dict[str, tuple[str, FakeConnection]]:
        sessions: dict[str, tuple[str, FakeConnection]] = {}
        for handle in handles:
            connection = FakeConnection()
            sessions[handle] = (await relay.connect(handle, connection), connection)
        for _, connection in sessions.values():
            connection.clear()
        return sessions

    return _connect


@pytest.fixture()
def app(repository: MessageRepository, users: tuple[str, ...]) -> FastAPI:
    return create_app(repository)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client
