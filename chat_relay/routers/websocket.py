"""WebSocket endpoint for the chat relay.

Provides:
- ``WS /ws?token=...``: authenticated, bidirectional event channel.

Every frame in both directions is a JSON object ``{"type": ..., "data": {...}}``.
The bearer credential travels with the handshake (``token`` query parameter or
``Authorization: Bearer`` header), never as a message.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from chat_relay.exceptions import AuthError
from chat_relay.models import (
    CheckOnlineEvent,
    JoinConversationEvent,
    MarkReadEvent,
    SendMessageEvent,
    TypingEvent,
)
from chat_relay.services import message_relay, signaling, ws_messages
from chat_relay.services.connection_manager import Connection
from chat_relay.services.conversation import room_id

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HEARTBEAT_INTERVAL: float = 30.0  # seconds between heartbeat pings
AUTH_FAILURE_CLOSE_CODE = 4001
NO_TOKEN_REASON = "Authentication error: No token provided"
INVALID_TOKEN_REASON = "Authentication error: Invalid token"

router = APIRouter()


# ---------------------------------------------------------------------------
# Heartbeat task
# ---------------------------------------------------------------------------


async def _heartbeat(connection: Connection) -> None:
    """Send periodic pings until the connection can no longer be written to."""
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL)
        if not await connection.send(ws_messages.ping()):
            return


# ---------------------------------------------------------------------------
# Handshake credential
# ---------------------------------------------------------------------------


def _bearer_from_headers(websocket: WebSocket) -> str | None:
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


# ---------------------------------------------------------------------------
# Client event handlers
# ---------------------------------------------------------------------------

EventHandler = Callable[[object, Connection, BaseModel], Awaitable[None]]


async def _on_join_conversation(state, connection: Connection, event: JoinConversationEvent) -> None:
    conversation_id = room_id(connection.identity.id, event.other_user_id)
    state.connection_manager.join_room(connection, conversation_id)
    logger.debug("%s joined conversation %s", connection.identity.id, conversation_id)
    await connection.send(
        ws_messages.conversation_joined(
            conversation_id=conversation_id,
            other_user_id=event.other_user_id,
        )
    )


async def _on_send_message(state, connection: Connection, event: SendMessageEvent) -> None:
    # Runs in the background; the store call must not hold up later frames.
    message_relay.relay_message(
        state.connection_manager,
        state.message_store,
        connection,
        recipient_id=event.recipient_id,
        recipient_email=event.recipient_email,
        message=event.message,
        conversation_id=event.conversation_id,
    )


async def _on_typing(state, connection: Connection, event: TypingEvent) -> None:
    await signaling.set_typing(
        state.connection_manager,
        state.typing_status,
        connection,
        recipient_id=event.recipient_id,
        recipient_email=event.recipient_email,
        is_typing=event.is_typing,
    )


async def _on_mark_read(state, connection: Connection, event: MarkReadEvent) -> None:
    await signaling.mark_read(
        state.connection_manager,
        connection,
        conversation_id=event.conversation_id,
        message_ids=event.message_ids,
    )


async def _on_check_online(state, connection: Connection, event: CheckOnlineEvent) -> None:
    statuses = signaling.check_online(state.connection_manager.registry, event.user_ids)
    await connection.send(ws_messages.online_status_lookup(statuses=statuses))


EVENT_HANDLERS: dict[str, tuple[type[BaseModel], EventHandler]] = {
    "join-conversation": (JoinConversationEvent, _on_join_conversation),
    "send-message": (SendMessageEvent, _on_send_message),
    "typing": (TypingEvent, _on_typing),
    "mark-read": (MarkReadEvent, _on_mark_read),
    "check-online": (CheckOnlineEvent, _on_check_online),
}


async def handle_frame(state, connection: Connection, raw: str) -> None:
    """Parse one client frame and dispatch it.

    Malformed frames are answered with an ``error`` event; the connection
    stays open.
    """
    try:
        frame = json.loads(raw)
    except ValueError:
        await connection.send(ws_messages.error(error="Invalid JSON"))
        return

    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        await connection.send(ws_messages.error(error="Invalid message format: type is required"))
        return

    event_type = frame["type"]
    entry = EVENT_HANDLERS.get(event_type)
    if entry is None:
        await connection.send(ws_messages.error(error=f"Unknown event type: {event_type}"))
        return

    model, handler = entry
    try:
        event = model.model_validate(frame.get("data") or {})
    except ValidationError as exc:
        await connection.send(
            ws_messages.error(
                error=f"Invalid payload for {event_type}",
                details="; ".join(
                    f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                    for err in exc.errors()
                ),
            )
        )
        return

    logger.debug("Connection %s received %s", connection.id, event_type)
    await handler(state, connection, event)


# ---------------------------------------------------------------------------
# WS /ws?token=...
# ---------------------------------------------------------------------------


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(default=None),
) -> None:
    """WebSocket endpoint: accept, authenticate, heartbeat, receive loop.

    1. Accept the handshake and read the credential from it.
    2. Authenticate; on failure close with 4001 and a reason, and return.
    3. Start the heartbeat task.
    4. Dispatch client frames until the transport disconnects.
    5. Release the connection (presence removal and broadcasts), then let
       in-flight message relays finish.
    """
    state = websocket.app.state
    manager = state.connection_manager

    await websocket.accept()
    connection = Connection(websocket=websocket)
    token = token or _bearer_from_headers(websocket)

    try:
        await manager.admit(connection, token)
    except AuthError as exc:
        logger.warning("Socket authentication error: %s %s", exc.message, exc.reasons)
        reason = NO_TOKEN_REASON if not token else INVALID_TOKEN_REASON
        await websocket.close(code=AUTH_FAILURE_CLOSE_CODE, reason=reason)
        return

    heartbeat_task = asyncio.create_task(_heartbeat(connection))

    try:
        while True:
            raw = await websocket.receive_text()
            await handle_frame(state, connection, raw)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Connection %s failed", connection.id)
    finally:
        # Presence is cleared before the first await inside release().
        await manager.release(connection)
        heartbeat_task.cancel()
        await message_relay.drain_relays(connection)
        try:
            await heartbeat_task
        except asyncio.CancelledError:
            pass
