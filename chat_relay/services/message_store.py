"""Client for the durable message store owned by the REST backend.

The relay forwards a copy of every chat message to ``POST /api/messages`` on
behalf of the sender, using the sender's own bearer token. The store is a
best-effort sink: every failure surfaces as :class:`PersistenceError` and the
caller decides what to do with it.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chat_relay.exceptions import PersistenceError

logger = logging.getLogger(__name__)

MESSAGES_PATH = "/api/messages"
DEFAULT_TIMEOUT = 5.0


def extract_message_id(body: Any) -> str | None:
    """Pull the stored record's identifier out of a store response.

    The store wraps the record as ``{"data": {"_id": ...}}``; bare records and
    ``id`` instead of ``_id`` are accepted too.
    """
    if not isinstance(body, dict):
        return None
    record = body.get("data") if isinstance(body.get("data"), dict) else body
    message_id = record.get("_id") or record.get("id")
    return str(message_id) if message_id else None


class MessageStore:
    """Thin async wrapper over one shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def save(
        self,
        *,
        recipient_id: str | None,
        message: str,
        conversation_id: str,
        credential: str | None,
    ) -> str:
        """Store a message and return the identifier the store assigned.

        Raises:
            PersistenceError: On timeout, connection failure, a non-2xx
                response, or a response without an identifier.
        """
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        try:
            response = await self._client.post(
                MESSAGES_PATH,
                json={
                    "recipientId": recipient_id,
                    "message": message,
                    "conversationId": conversation_id,
                },
                headers=headers,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise PersistenceError(f"Message store timed out after {self.timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise PersistenceError(
                f"Message store returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise PersistenceError(f"Message store request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise PersistenceError("Message store returned a non-JSON body") from exc

        message_id = extract_message_id(body)
        if message_id is None:
            raise PersistenceError("Message store response carried no message id")

        logger.info("Message saved to store: %s (conversation %s)", message_id, conversation_id)
        return message_id

    async def aclose(self) -> None:
        await self._client.aclose()
