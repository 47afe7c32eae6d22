"""Tests for the message pipeline: persistence, delivery status and deletion."""

import pytest
from sqlalchemy.exc import OperationalError

from parlor.models import MessageStatus
from parlor.services.errors import InvalidPayload, MessagePersistError, StaleEvent, Unauthorized


@pytest.mark.asyncio
async def test_send_to_offline_receiver_stays_sent(relay, online, repository):
    sessions = await online("alice")
    _, alice = sessions["alice"]

    message = await relay.messages.send("alice", "bob", "  hi  ")

    assert message.status is MessageStatus.SENT
    assert message.body == "hi"
    echo = alice.payloads("receive_message")
    assert len(echo) == 1
    assert echo[0]["status"] == "sent"
    assert echo[0]["message"] == "hi"

    history = await relay.messages.history("bob", "alice")
    assert [(m.id, m.status) for m in history] == [(message.id, MessageStatus.SENT)]


@pytest.mark.asyncio
async def test_send_to_online_receiver_is_delivered(relay, online, repository):
    sessions = await online("alice", "bob")
    _, alice = sessions["alice"]
    _, bob = sessions["bob"]

    message = await relay.messages.send("alice", "bob", "hello", client_id="tmp-1")

    assert message.status is MessageStatus.DELIVERED
    assert repository.get_message(message.id).status is MessageStatus.DELIVERED
    assert bob.payloads("receive_message")[0]["status"] == "delivered"
    echo = alice.payloads("receive_message")[0]
    assert echo["status"] == "delivered"
    assert echo["clientId"] == "tmp-1"
    assert echo["id"] == message.id


@pytest.mark.asyncio
async def test_failed_push_leaves_message_sent(relay, repository, users, make_connection):
    await relay.connect("alice", make_connection())
    await relay.connect("bob", make_connection(fail=True))

    message = await relay.messages.send("alice", "bob", "hello")

    assert message.status is MessageStatus.SENT
    assert repository.get_message(message.id).status is MessageStatus.SENT


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["", "   ", "x" * 4001])
async def test_send_rejects_invalid_body(relay, users, body):
    with pytest.raises(InvalidPayload):
        await relay.messages.send("alice", "bob", body)


@pytest.mark.asyncio
async def test_send_rejects_unknown_receiver(relay, users):
    with pytest.raises(InvalidPayload):
        await relay.messages.send("alice", "mallory", "hi")


@pytest.mark.asyncio
async def test_persist_failure_reports_send_failed(relay, online, mocker):
    sessions = await online("alice")
    _, alice = sessions["alice"]
    mocker.patch.object(
        relay.repository,
        "save_message",
        side_effect=OperationalError("INSERT", {}, Exception("disk full")),
    )

    with pytest.raises(MessagePersistError):
        await relay.messages.send("alice", "bob", "hi", client_id="tmp-9")

    assert alice.payloads("send_failed") == [
        {"clientId": "tmp-9", "receiver": "bob", "reason": "persist_failed"}
    ]
    assert alice.payloads("receive_message") == []


@pytest.mark.asyncio
async def test_acknowledge_read_is_idempotent(relay, online, repository):
    sessions = await online("alice", "bob")
    _, alice = sessions["alice"]
    message = await relay.messages.send("alice", "bob", "hi")
    alice.clear()

    assert await relay.messages.acknowledge_read(message.id, "alice", reader="bob") is True
    assert await relay.messages.acknowledge_read(message.id, "alice", reader="bob") is False

    assert alice.payloads("message_read") == [{"messageId": message.id}]
    assert repository.get_message(message.id).status is MessageStatus.READ


@pytest.mark.asyncio
async def test_acknowledge_read_only_by_receiver(relay, users):
    message = await relay.messages.send("alice", "bob", "hi")

    with pytest.raises(Unauthorized):
        await relay.messages.acknowledge_read(message.id, "alice", reader="carol")


@pytest.mark.asyncio
async def test_acknowledge_missing_message_is_stale(relay, users):
    with pytest.raises(StaleEvent):
        await relay.messages.acknowledge_read(424242, "alice")


@pytest.mark.asyncio
async def test_offline_then_online_read_flow(relay, online, repository, make_connection):
    """A message sent while B was offline stays ``sent`` until B reads it."""
    sessions = await online("alice")
    _, alice = sessions["alice"]
    message = await relay.messages.send("alice", "bob", "hi")

    await relay.connect("bob", make_connection())
    history = await relay.messages.history("bob", "alice")
    assert history[0].status is MessageStatus.SENT

    alice.clear()
    await relay.messages.acknowledge_read(message.id, "alice", reader="bob")

    assert alice.payloads("message_read") == [{"messageId": message.id}]
    assert repository.get_message(message.id).status is MessageStatus.READ


@pytest.mark.asyncio
async def test_delete_rejects_foreign_messages_without_removing_any(relay, repository, users):
    mine = await relay.messages.send("alice", "bob", "mine")
    theirs = await relay.messages.send("bob", "alice", "theirs")

    with pytest.raises(Unauthorized):
        await relay.messages.delete([mine.id, theirs.id], "alice")

    assert repository.get_message(mine.id) is not None
    assert repository.get_message(theirs.id) is not None


@pytest.mark.asyncio
async def test_delete_and_mirror_to_receiver(relay, online, repository):
    sessions = await online("alice", "bob")
    _, alice = sessions["alice"]
    _, bob = sessions["bob"]
    first = await relay.messages.send("alice", "bob", "one")
    second = await relay.messages.send("alice", "bob", "two")
    alice.clear()
    bob.clear()

    removed = await relay.messages.delete([first.id], "alice")
    await relay.messages.mirror_deletions(removed, also_notify="alice")

    expected = [{"id": first.id, "sender": "alice", "receiver": "bob"}]
    assert bob.payloads("messages_deleted") == [{"deletedMessages": expected}]
    assert alice.payloads("messages_deleted") == [{"deletedMessages": expected}]
    assert repository.get_message(second.id) is not None


@pytest.mark.asyncio
async def test_clear_own_only_removes_requesters_messages(relay, repository, users):
    await relay.messages.send("alice", "bob", "one")
    await relay.messages.send("alice", "bob", "two")
    reply = await relay.messages.send("bob", "alice", "reply")
    await relay.messages.send("alice", "carol", "other chat")

    removed = await relay.messages.clear_own("alice", "bob")

    assert sorted(m.body for m in removed) == ["one", "two"]
    remaining = repository.find_messages_between("alice", "bob")
    assert [m.id for m in remaining] == [reply.id]
    assert len(repository.find_sent_to("alice", "carol")) == 1


@pytest.mark.asyncio
async def test_history_does_not_mark_read(relay, online, repository):
    await online("alice", "bob")
    message = await relay.messages.send("alice", "bob", "hi")

    await relay.messages.history("bob", "alice")

    assert repository.get_message(message.id).status is MessageStatus.DELIVERED
