import asyncio

import pytest

from parlor.services.session_registry import SessionRegistry, new_connection_id


@pytest.mark.asyncio
async def test_register_and_resolve():
    registry = SessionRegistry()

    assert await registry.register("alice", "c1") is None
    assert await registry.resolve("alice") == "c1"
    assert await registry.resolve("bob") is None
    assert await registry.handle_for("c1") == "alice"


@pytest.mark.asyncio
async def test_reconnect_supersedes_previous_connection():
    registry = SessionRegistry()
    await registry.register("alice", "c1")

    assert await registry.register("alice", "c2") == "c1"
    assert await registry.resolve("alice") == "c2"
    assert await registry.handle_for("c1") is None
    assert len(await registry.sessions()) == 1


@pytest.mark.asyncio
async def test_stale_unregister_keeps_newer_session():
    registry = SessionRegistry()
    await registry.register("alice", "c1")
    await registry.register("alice", "c2")

    # The old socket's disconnect arrives after the reconnect.
    assert await registry.unregister("c1") is None
    assert await registry.resolve("alice") == "c2"

    assert await registry.unregister("c2") == "alice"
    assert await registry.resolve("alice") is None
    assert not await registry.is_online("alice")


@pytest.mark.asyncio
async def test_unregister_unknown_connection_is_noop():
    registry = SessionRegistry()
    assert await registry.unregister("missing") is None


@pytest.mark.asyncio
async def test_concurrent_churn_keeps_one_connection_per_handle():
    registry = SessionRegistry()
    ids = [new_connection_id() for _ in range(20)]

    await asyncio.gather(*(registry.register("alice", cid) for cid in ids))
    current = await registry.resolve("alice")
    assert current in ids

    results = await asyncio.gather(*(registry.unregister(cid) for cid in ids if cid != current))
    assert results == [None] * (len(ids) - 1)
    assert len(await registry.sessions()) == 1

    await registry.unregister(current)
    assert await registry.resolve("alice") is None
