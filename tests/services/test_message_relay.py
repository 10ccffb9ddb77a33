"""Tests for the send-message flow.

Covers:
- exactly one receive-message / message-sent / new-message per send
- recipient resolved by id, then by email
- offline recipients: sender still acknowledged
- store failures and slow stores: delivered with the local id, persisted False
- the room sees the pre-persistence record
- the store call carries the sender's credential
- background relays: pipelined sends stay ordered and each meets the timeout
"""

from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from chat_relay.models import MessageRecord
from chat_relay.services.message_relay import drain_relays, persist_message, relay_message, send_message
from chat_relay.services.message_store import MessageStore
from chat_relay.services.signaling import set_typing
from tests.factories import frames_of_type, make_connection, make_identity, make_ws, sent_types


def _online(manager, identity, *, credential: str = "sender-token"):
    """Register an ACTIVE connection for *identity* with *manager*; return (conn, ws)."""
    ws = make_ws(name=identity.id)
    connection = make_connection(identity, ws=ws, credential=credential)
    manager.registry.register(identity, connection)
    manager._active.add(connection)
    return connection, ws


def _failing_store(status: int = 500) -> MessageStore:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": "boom"})

    return MessageStore("http://store.test", timeout=1.0, transport=httpx.MockTransport(handler))


def _slow_store(delay: float, timeout: float) -> MessageStore:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(delay)
        return httpx.Response(201, json={"data": {"_id": "too-late"}})

    return MessageStore(
        "http://store.test", timeout=timeout, transport=httpx.MockTransport(handler)
    )


@pytest.fixture
def alice():
    return make_identity(id="u1", email="a@x.com", display_name="Alice")


@pytest.fixture
def bob():
    return make_identity(id="u2", email="b@x.com", display_name="Bob")


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDelivery:
    async def test_one_of_each_event(self, manager, message_store, alice, bob):
        sender, ws_a = _online(manager, alice)
        _, ws_b = _online(manager, bob)
        manager.join_room(sender, "u1_u2")

        record = await send_message(
            manager, message_store, sender,
            recipient_id="u2", recipient_email=None, message="hi",
        )

        assert sent_types(ws_b) == ["receive-message"]
        assert sent_types(ws_a) == ["message-sent", "new-message"]

        received = frames_of_type(ws_b, "receive-message")[0]["data"]
        assert received["id"] == "db-1"
        assert received["persisted"] is True
        assert received["senderId"] == "u1"
        assert received["senderName"] == "Alice"
        assert received["recipientId"] == "u2"
        assert received["conversationId"] == "u1_u2"
        assert received["message"] == "hi"
        assert received["read"] is False

        acked = frames_of_type(ws_a, "message-sent")[0]["data"]
        assert acked == received
        assert record.id == "db-1"

    async def test_email_only_routing(self, manager, message_store, alice, bob):
        """Recipient registered as u2/b@x.com; sender only knows the email."""
        sender, ws_a = _online(manager, alice)
        _, ws_b = _online(manager, bob)

        await send_message(
            manager, message_store, sender,
            recipient_id=None, recipient_email="b@x.com", message="hello",
        )

        assert sent_types(ws_b) == ["receive-message"]
        received = frames_of_type(ws_b, "receive-message")[0]["data"]
        assert received["conversationId"] == "b@x.com_u1"
        assert sent_types(ws_a) == ["message-sent"]

    async def test_wrong_id_falls_back_to_email(self, manager, message_store, alice, bob):
        sender, _ = _online(manager, alice)
        _, ws_b = _online(manager, bob)

        await send_message(
            manager, message_store, sender,
            recipient_id="stale-id", recipient_email="b@x.com", message="hi",
        )

        assert sent_types(ws_b) == ["receive-message"]

    async def test_offline_recipient(self, manager, message_store, alice):
        sender, ws_a = _online(manager, alice)

        record = await send_message(
            manager, message_store, sender,
            recipient_id="u9", recipient_email=None, message="anyone?",
        )

        assert sent_types(ws_a) == ["message-sent"]
        assert record.persisted is True

    async def test_given_conversation_id_is_used(self, manager, message_store, alice, bob):
        sender, _ = _online(manager, alice)
        _, ws_b = _online(manager, bob)

        await send_message(
            manager, message_store, sender,
            recipient_id="u2", recipient_email=None, message="hi",
            conversation_id="custom-room",
        )

        assert frames_of_type(ws_b, "receive-message")[0]["data"]["conversationId"] == "custom-room"

    async def test_no_recipient_key_uses_unknown(self, manager, message_store, alice):
        sender, _ = _online(manager, alice)

        record = await send_message(
            manager, message_store, sender,
            recipient_id=None, recipient_email=None, message="void",
        )

        assert record.conversation_id == "u1_unknown"

    async def test_room_receives_local_record(self, manager, message_store, alice, bob):
        sender, ws_a = _online(manager, alice)
        recipient, ws_b = _online(manager, bob)
        manager.join_room(sender, "u1_u2")
        manager.join_room(recipient, "u1_u2")

        await send_message(
            manager, message_store, sender,
            recipient_id="u2", recipient_email=None, message="hi",
        )

        room_copy = frames_of_type(ws_b, "new-message")[0]["data"]
        assert room_copy["id"].startswith("msg_")
        assert room_copy["persisted"] is False
        assert frames_of_type(ws_a, "new-message")[0]["data"] == room_copy
        assert frames_of_type(ws_b, "receive-message")[0]["data"]["id"] == "db-1"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    async def test_store_request(self, manager, message_store, store_requests, alice, bob):
        sender, _ = _online(manager, alice, credential="alice-token")
        _online(manager, bob)

        await send_message(
            manager, message_store, sender,
            recipient_id="u2", recipient_email=None, message="hi",
        )

        assert len(store_requests) == 1
        request = store_requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/messages"
        assert request.headers["authorization"] == "Bearer alice-token"
        assert json.loads(request.content) == {
            "recipientId": "u2",
            "message": "hi",
            "conversationId": "u1_u2",
        }

    async def test_store_error_still_delivers(self, manager, alice, bob):
        store = _failing_store(500)
        sender, ws_a = _online(manager, alice)
        _, ws_b = _online(manager, bob)

        try:
            record = await send_message(
                manager, store, sender,
                recipient_id="u2", recipient_email=None, message="hi",
            )
        finally:
            await store.aclose()

        assert record.persisted is False
        assert record.id.startswith("msg_")
        received = frames_of_type(ws_b, "receive-message")[0]["data"]
        assert received["persisted"] is False
        assert received["id"] == record.id
        assert sent_types(ws_a) == ["message-sent"]

    async def test_slow_store_bounded_by_timeout(self, manager, alice, bob):
        store = _slow_store(delay=5.0, timeout=0.1)
        sender, _ = _online(manager, alice)
        _, ws_b = _online(manager, bob)

        started = time.monotonic()
        try:
            record = await send_message(
                manager, store, sender,
                recipient_id="u2", recipient_email=None, message="hi",
            )
        finally:
            await store.aclose()
        elapsed = time.monotonic() - started

        assert elapsed < 2.0
        assert record.persisted is False
        assert sent_types(ws_b) == ["receive-message"]

    async def test_persist_message_returns_none_on_failure(self, alice):
        store = _failing_store(401)
        record = MessageRecord(
            conversation_id="u1_u2", sender_id="u1", sender_name="Alice",
            recipient_id="u2", message="hi",
        )
        try:
            assert await persist_message(store, record, "token") is None
        finally:
            await store.aclose()


# ---------------------------------------------------------------------------
# Background relays
# ---------------------------------------------------------------------------


def _timed_online(manager, identity, arrivals: list, started: float):
    """Like ``_online``, but records ``(type, message, seconds)`` per frame."""
    connection, ws = _online(manager, identity)
    ws.send_json.side_effect = lambda frame: arrivals.append(
        (frame["type"], frame["data"].get("message"), time.monotonic() - started)
    )
    return connection, ws


class TestBackgroundRelay:
    async def test_pipelined_messages_each_arrive_within_timeout(self, manager, typing_status, alice, bob):
        """Three sends and a typing signal against a store that never answers."""
        timeout = 0.2
        store = _slow_store(delay=5.0, timeout=timeout)
        arrivals: list = []
        started = time.monotonic()
        sender, _ = _online(manager, alice)
        _timed_online(manager, bob, arrivals, started)

        try:
            for n in range(3):
                relay_message(
                    manager, store, sender,
                    recipient_id="u2", recipient_email=None, message=f"m{n}",
                )
            await set_typing(
                manager, typing_status, sender,
                recipient_id="u2", recipient_email=None, is_typing=True,
            )
            await drain_relays(sender)
        finally:
            await store.aclose()

        assert arrivals[0][0] == "user-typing"
        assert arrivals[0][2] < timeout
        received = [(message, at) for kind, message, at in arrivals if kind == "receive-message"]
        assert [message for message, _ in received] == ["m0", "m1", "m2"]
        # Serial handling would put the last one at about 3 x timeout.
        assert all(at < timeout * 2 for _, at in received)

    async def test_order_kept_when_first_store_call_is_slowest(self, manager, alice, bob):
        delays = iter([0.3, 0.0, 0.0])

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(next(delays))
            return httpx.Response(201, json={"data": {"_id": json.loads(request.content)["message"]}})

        store = MessageStore("http://store.test", timeout=1.0, transport=httpx.MockTransport(handler))
        sender, _ = _online(manager, alice)
        _, ws_b = _online(manager, bob)

        try:
            for n in range(3):
                relay_message(
                    manager, store, sender,
                    recipient_id="u2", recipient_email=None, message=f"m{n}",
                )
            await drain_relays(sender)
        finally:
            await store.aclose()

        received = frames_of_type(ws_b, "receive-message")
        assert [frame["data"]["message"] for frame in received] == ["m0", "m1", "m2"]
        assert all(frame["data"]["persisted"] for frame in received)

    async def test_drain_after_release_still_delivers(self, manager, message_store, store_requests, alice, bob):
        sender, ws_a = _online(manager, alice)
        _, ws_b = _online(manager, bob)

        task = relay_message(
            manager, message_store, sender,
            recipient_id="u2", recipient_email=None, message="bye",
        )
        assert task in sender.pending_relays
        await manager.release(sender)
        ws_a.send_json.reset_mock()
        await drain_relays(sender)

        assert sender.pending_relays == set()
        assert len(store_requests) == 1
        assert frames_of_type(ws_b, "receive-message")[0]["data"]["message"] == "bye"
        # The sender is closed, so its acknowledgment is dropped.
        ws_a.send_json.assert_not_awaited()

    async def test_drain_with_nothing_pending(self, alice):
        await drain_relays(make_connection(alice))
