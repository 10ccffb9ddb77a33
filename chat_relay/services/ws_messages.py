"""WebSocket message factory functions.

Each function returns a plain dict ``{"type": <event>, "data": {...}}``.
Services call these factories and pass the result to the connection
manager's ``send``, ``broadcast`` or ``emit_to_room``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from chat_relay.models import Identity, MessageRecord, utc_timestamp
from chat_relay.services.presence_registry import PresenceSnapshot

CONNECTED_MESSAGE = "Successfully connected to chat server"


def _event(event_type: str, data: dict) -> dict:
    return {"type": event_type, "data": data}


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


def connected(*, identity: Identity) -> dict:
    """Direct acknowledgment sent to a connection once it is active."""
    return _event(
        "connected",
        {
            "message": CONNECTED_MESSAGE,
            "userId": identity.id,
            "userName": identity.name,
        },
    )


def _presence_delta(event_type: str, identity: Identity) -> dict:
    return _event(
        event_type,
        {
            "userId": identity.id,
            "userEmail": identity.email,
            "userName": identity.name,
            "timestamp": utc_timestamp(),
        },
    )


def user_online(*, identity: Identity) -> dict:
    """A user became reachable. Sent to everyone except that user's connection."""
    return _presence_delta("user-online", identity)


def user_offline(*, identity: Identity) -> dict:
    """A user's connection closed. Same shape as ``user_online``."""
    return _presence_delta("user-offline", identity)


def online_status_snapshot(*, snapshot: PresenceSnapshot) -> dict:
    """Full online map, keyed both by user id and by email."""
    return _event(
        "online-status",
        {
            "byId": {user_id: True for user_id in sorted(snapshot.user_ids)},
            "byEmail": {email: True for email in sorted(snapshot.emails)},
        },
    )


def online_status_lookup(*, statuses: Mapping[str, bool]) -> dict:
    """Reply to ``check-online``: flat ``{user_id: bool}`` map.

    Shares the ``online-status`` event name with the broadcast snapshot but
    carries a different shape.
    """
    return _event("online-status", dict(statuses))


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------


def conversation_joined(*, conversation_id: str, other_user_id: str) -> dict:
    return _event(
        "conversation-joined",
        {"conversationId": conversation_id, "otherUserId": other_user_id},
    )


def receive_message(*, record: MessageRecord) -> dict:
    """Direct delivery to the recipient."""
    return _event("receive-message", record.model_dump(by_alias=True))


def message_sent(*, record: MessageRecord) -> dict:
    """Acknowledgment to the sender."""
    return _event("message-sent", record.model_dump(by_alias=True))


def new_message(*, record: MessageRecord) -> dict:
    """Room-scoped broadcast to every connection that joined the conversation."""
    return _event("new-message", record.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def user_typing(*, identity: Identity, is_typing: bool, conversation_id: str) -> dict:
    return _event(
        "user-typing",
        {
            "userId": identity.id,
            "userName": identity.name,
            "isTyping": is_typing,
            "conversationId": conversation_id,
        },
    )


def messages_read(*, conversation_id: str, message_ids: Iterable[str], read_by: str) -> dict:
    return _event(
        "messages-read",
        {
            "conversationId": conversation_id,
            "messageIds": list(message_ids),
            "readBy": read_by,
        },
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


def ping() -> dict:
    """Heartbeat keepalive."""
    return _event("ping", {})


def error(*, error: str, details: str | None = None) -> dict:
    """A client frame could not be handled. Omits ``details`` when empty."""
    data: dict = {"error": error}
    if details:
        data["details"] = details
    return _event("error", data)
