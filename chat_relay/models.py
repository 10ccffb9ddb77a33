"""Pydantic models for identities, message records and client events.

Client frames arrive as ``{"type": <event>, "data": {...}}``; the ``data``
object is validated with one of the ``*Event`` models below. Field names are
snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_timestamp() -> str:
    """Current UTC time as an ISO 8601 string with a ``Z`` suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def local_message_id() -> str:
    """Transient message id: millisecond prefix plus a random suffix.

    Unique enough to correlate an acknowledgment; not a durable identifier.
    """
    return f"msg_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class AuthMethod(str, Enum):
    """Which issuer vouched for an identity."""

    LOCAL = "local"
    FEDERATED_TOKEN = "federated"


class Identity(BaseModel):
    """Canonical identity produced once per connection by the token verifier."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    email: str | None = None
    display_name: str | None = None
    auth_method: AuthMethod

    @property
    def name(self) -> str:
        """Name shown to other participants.

        Falls back to the local part of the email, then to the user id.
        """
        if self.display_name:
            return self.display_name
        if self.email:
            return self.email.split("@")[0]
        return self.id


# ---------------------------------------------------------------------------
# Message record
# ---------------------------------------------------------------------------


class MessageRecord(BaseModel):
    """A chat message as delivered to clients.

    Serialize with ``model_dump(by_alias=True)`` to get the wire shape.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=local_message_id)
    conversation_id: str
    sender_id: str
    sender_name: str
    recipient_id: str | None = None
    message: str
    timestamp: str = Field(default_factory=utc_timestamp)
    read: bool = False
    persisted: bool = False


# ---------------------------------------------------------------------------
# Client -> server event payloads
# ---------------------------------------------------------------------------


class _ClientEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JoinConversationEvent(_ClientEvent):
    """Payload of ``join-conversation``."""

    other_user_id: str = Field(..., min_length=1)


class SendMessageEvent(_ClientEvent):
    """Payload of ``send-message``."""

    recipient_id: str | None = None
    recipient_email: str | None = None
    message: str
    conversation_id: str | None = None


class TypingEvent(_ClientEvent):
    """Payload of ``typing``."""

    recipient_id: str | None = None
    recipient_email: str | None = None
    is_typing: bool


class MarkReadEvent(_ClientEvent):
    """Payload of ``mark-read``."""

    conversation_id: str = Field(..., min_length=1)
    message_ids: list[str] = []


class CheckOnlineEvent(_ClientEvent):
    """Payload of ``check-online``."""

    user_ids: list[str] = []
