"""Typing indicators, read receipts and online checks.

None of these signals are persisted. Typing state is kept per conversation
until the user explicitly reports ``isTyping=False``; it is not expired and
not cleared when the user disconnects.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from chat_relay.services import ws_messages
from chat_relay.services.connection_manager import Connection, ConnectionManager
from chat_relay.services.conversation import counterpart_key, room_id
from chat_relay.services.presence_registry import PresenceRegistry

logger = logging.getLogger(__name__)


class TypingStatus:
    """``conversation_id -> {user_id -> is_typing}`` table."""

    def __init__(self) -> None:
        self._status: dict[str, dict[str, bool]] = {}

    def set(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        self._status.setdefault(conversation_id, {})[user_id] = is_typing

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        return self._status.get(conversation_id, {}).get(user_id, False)

    def for_conversation(self, conversation_id: str) -> dict[str, bool]:
        return dict(self._status.get(conversation_id, {}))


async def set_typing(
    manager: ConnectionManager,
    typing_status: TypingStatus,
    sender: Connection,
    *,
    recipient_id: str | None,
    recipient_email: str | None,
    is_typing: bool,
) -> str:
    """Record *sender*'s typing state and tell the recipient if reachable.

    Returns the conversation id the state was recorded under.
    """
    identity = sender.identity
    conversation_id = room_id(identity.id, counterpart_key(recipient_id, recipient_email))
    typing_status.set(conversation_id, identity.id, is_typing)

    recipient = manager.lookup(user_id=recipient_id, email=recipient_email)
    if recipient is not None:
        await manager.send(
            recipient,
            ws_messages.user_typing(
                identity=identity,
                is_typing=is_typing,
                conversation_id=conversation_id,
            ),
        )
    return conversation_id


async def mark_read(
    manager: ConnectionManager,
    reader: Connection,
    *,
    conversation_id: str,
    message_ids: Iterable[str],
) -> None:
    """Broadcast a read receipt to everyone subscribed to the conversation room."""
    await manager.emit_to_room(
        conversation_id,
        ws_messages.messages_read(
            conversation_id=conversation_id,
            message_ids=message_ids,
            read_by=reader.identity.id,
        ),
    )


def check_online(registry: PresenceRegistry, user_ids: Iterable[str]) -> dict[str, bool]:
    """Presence by user id only; emails are not consulted."""
    return {user_id: registry.is_online(user_id) for user_id in user_ids}
