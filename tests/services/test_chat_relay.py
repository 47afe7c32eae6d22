"""Tests for ChatRelay connection lifecycle and event dispatch."""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from parlor.models import MessageStatus
from parlor.services.call_relay import CallPhase
from parlor.services.hub import SUPERSEDED_CLOSE_CODE

OFFER = {"type": "offer", "sdp": "o"}
ANSWER = {"type": "answer", "sdp": "a"}


@pytest.mark.asyncio
async def test_handler_table_covers_inbound_events(relay):
    assert relay.events == {
        "typing",
        "send_message",
        "mark_as_read",
        "messages_deleted",
        "call_initiate",
        "call_answer",
        "call_candidate",
        "call_reject",
        "call_end",
        "call_connected",
    }


@pytest.mark.asyncio
async def test_send_message_event_round_trip(relay, online, repository):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    _, bob = sessions["bob"]

    await relay.dispatch(alice_id, "send_message", {"receiver": "bob", "message": "hi", "clientId": "c1"})

    [pushed] = bob.payloads("receive_message")
    assert pushed["sender"] == "alice"
    assert pushed["status"] == "delivered"
    [echo] = alice.payloads("receive_message")
    assert echo["clientId"] == "c1"
    assert repository.get_message(pushed["id"]).status is MessageStatus.DELIVERED


@pytest.mark.asyncio
async def test_mark_as_read_event(relay, online, repository):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    bob_id, _ = sessions["bob"]
    await relay.dispatch(alice_id, "send_message", {"receiver": "bob", "message": "hi"})
    message_id = alice.payloads("receive_message")[0]["id"]

    await relay.dispatch(bob_id, "mark_as_read", {"messageId": message_id, "sender": "alice"})
    await relay.dispatch(bob_id, "mark_as_read", {"messageId": message_id, "sender": "alice"})

    assert alice.payloads("message_read") == [{"messageId": message_id}]
    assert repository.get_message(message_id).status is MessageStatus.READ


@pytest.mark.asyncio
async def test_invalid_payload_surfaces_error_to_sender_only(relay, online):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    _, bob = sessions["bob"]

    await relay.dispatch(alice_id, "send_message", {"receiver": "bob"})

    [error] = alice.payloads("error")
    assert error["code"] == "invalid_payload"
    assert error["event"] == "send_message"
    assert bob.frames == []


@pytest.mark.asyncio
async def test_unknown_event_and_unregistered_connection_are_ignored(relay, online):
    sessions = await online("alice")
    alice_id, alice = sessions["alice"]

    await relay.dispatch(alice_id, "launch_rockets", {})
    await relay.dispatch("not-a-connection", "send_message", {"receiver": "bob", "message": "x"})

    assert alice.frames == []


@pytest.mark.asyncio
async def test_delete_foreign_message_is_unauthorized(relay, online, repository):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    bob_id, _ = sessions["bob"]
    await relay.dispatch(bob_id, "send_message", {"receiver": "alice", "message": "mine"})
    message_id = alice.payloads("receive_message")[0]["id"]
    alice.clear()

    await relay.dispatch(alice_id, "messages_deleted", {"messageIds": [message_id]})

    assert alice.payloads("error")[0]["code"] == "unauthorized"
    assert repository.get_message(message_id) is not None


@pytest.mark.asyncio
async def test_clear_with_mirrors_to_both_sides(relay, online, repository):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    _, bob = sessions["bob"]
    await relay.dispatch(alice_id, "send_message", {"receiver": "bob", "message": "one"})
    alice.clear()
    bob.clear()

    await relay.dispatch(alice_id, "messages_deleted", {"clearWith": "bob"})

    assert len(bob.payloads("messages_deleted")[0]["deletedMessages"]) == 1
    assert len(alice.payloads("messages_deleted")[0]["deletedMessages"]) == 1
    assert repository.find_sent_to("alice", "bob") == []


@pytest.mark.asyncio
async def test_messages_deleted_requires_exactly_one_target(relay, online):
    sessions = await online("alice")
    alice_id, alice = sessions["alice"]

    await relay.dispatch(alice_id, "messages_deleted", {})

    assert alice.payloads("error")[0]["code"] == "invalid_payload"


@pytest.mark.asyncio
async def test_call_to_offline_peer_reports_peer_offline(relay, online):
    sessions = await online("alice")
    alice_id, alice = sessions["alice"]

    await relay.dispatch(alice_id, "call_initiate", {"to": "bob", "signal": OFFER})

    [error] = alice.payloads("error")
    assert error["code"] == "peer_offline"
    assert error["event"] == "call_initiate"
    assert await relay.calls.active_count() == 0


@pytest.mark.asyncio
async def test_stale_call_signals_are_not_surfaced(relay, online):
    sessions = await online("alice", "bob")
    bob_id, bob = sessions["bob"]

    await relay.dispatch(bob_id, "call_answer", {"to": "alice", "signal": ANSWER})
    await relay.dispatch(bob_id, "call_candidate", {"to": "alice", "candidate": {"candidate": "x"}})
    await relay.dispatch(bob_id, "call_end", {"to": "alice"})

    assert bob.frames == []


@pytest.mark.asyncio
async def test_full_call_signaling_flow(relay, online):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    bob_id, bob = sessions["bob"]

    await relay.dispatch(alice_id, "call_initiate", {"to": "bob", "signal": OFFER})
    await relay.dispatch(bob_id, "call_answer", {"to": "alice", "signal": ANSWER})
    for n in range(3):
        await relay.dispatch(alice_id, "call_candidate", {"to": "bob", "candidate": {"n": n}})
        await relay.dispatch(bob_id, "call_candidate", {"to": "alice", "candidate": {"n": n}})
    await relay.dispatch(alice_id, "call_connected", {"to": "bob"})

    assert (await relay.calls.get("alice", "bob")).phase is CallPhase.ACTIVE
    assert len(bob.payloads("call_candidate")) == 3
    assert len(alice.payloads("call_candidate")) == 3

    await relay.dispatch(alice_id, "call_end", {"to": "bob"})

    assert bob.payloads("call_end") == [{"from": "alice", "reason": "hangup"}]
    assert await relay.calls.get("alice", "bob") is None


@pytest.mark.asyncio
async def test_disconnect_ends_calls(relay, online):
    sessions = await online("alice", "bob")
    alice_id, _ = sessions["alice"]
    bob_id, bob = sessions["bob"]
    await relay.dispatch(alice_id, "call_initiate", {"to": "bob", "signal": OFFER})

    await relay.disconnect(alice_id)

    assert bob.payloads("call_end") == [{"from": "alice", "reason": "peer_disconnected"}]
    assert await relay.calls.active_count() == 0

    # A second disconnect for the same connection is harmless.
    await relay.disconnect(alice_id)


@pytest.mark.asyncio
async def test_reconnect_supersedes_and_closes_old_socket(relay, online, make_connection):
    sessions = await online("alice", "bob")
    old_id, old_socket = sessions["alice"]
    _, bob = sessions["bob"]
    await relay.dispatch(old_id, "call_initiate", {"to": "bob", "signal": OFFER})

    new_socket = make_connection()
    new_id = await relay.connect("alice", new_socket)

    assert old_socket.closed_with == SUPERSEDED_CLOSE_CODE
    assert await relay.registry.resolve("alice") == new_id
    assert bob.payloads("call_end") == [{"from": "alice", "reason": "superseded"}]

    # The old socket's late disconnect must not take the new session offline.
    bob.clear()
    await relay.disconnect(old_id)
    assert await relay.registry.resolve("alice") == new_id
    assert bob.payloads("user_status") == []


@pytest.mark.asyncio
async def test_cancelled_disconnect_still_ends_calls_and_announces_offline(relay, online):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    bob_id, _ = sessions["bob"]
    await relay.dispatch(alice_id, "call_initiate", {"to": "bob", "signal": OFFER})
    alice.clear()

    task = asyncio.create_task(relay.disconnect(bob_id))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await relay.wait_idle()

    assert not await relay.registry.is_online("bob")
    assert await relay.calls.active_count() == 0
    assert alice.payloads("call_end") == [{"from": "bob", "reason": "peer_disconnected"}]
    [status] = alice.payloads("user_status")
    assert status["username"] == "bob"
    assert status["status"] == "offline"


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["find_user", "save_message"])
async def test_storage_failure_during_send_reports_send_failed(relay, online, mocker, method):
    sessions = await online("alice")
    alice_id, alice = sessions["alice"]
    mocker.patch.object(
        relay.repository,
        method,
        side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
    )

    await relay.dispatch(alice_id, "send_message", {"receiver": "bob", "message": "hi", "clientId": "c7"})

    assert alice.payloads("send_failed") == [
        {"clientId": "c7", "receiver": "bob", "reason": "persist_failed"}
    ]
    assert alice.payloads("error") == []


@pytest.mark.asyncio
async def test_storage_failure_in_other_events_is_surfaced(relay, online, mocker):
    sessions = await online("alice", "bob")
    alice_id, alice = sessions["alice"]
    _, bob = sessions["bob"]
    mocker.patch.object(
        relay.repository,
        "find_sent_to",
        side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
    )

    await relay.dispatch(alice_id, "messages_deleted", {"clearWith": "bob"})

    [error] = alice.payloads("error")
    assert error["code"] == "storage_unavailable"
    assert error["event"] == "messages_deleted"
    assert bob.frames == []

    # The connection keeps working afterwards.
    await relay.dispatch(alice_id, "typing", {"receiver": "bob", "isTyping": True})
    assert bob.payloads("typing") == [{"username": "alice", "isTyping": True}]
