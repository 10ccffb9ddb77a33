"""Message relay: the ``send-message`` flow.

1. Resolve the conversation id (given, or derived from the two participants).
2. Build the message record with a transient local id.
3. Try to persist it through the message store, bounded by the store timeout.
4. Resolve the recipient's connection by user id, then by email.
5. Deliver: ``receive-message`` to the recipient (if online), ``message-sent``
   to the sender, ``new-message`` to the conversation room.

Persistence never gates delivery. If the store fails or is too slow, the
message is still delivered with its local id and ``persisted=False``.

The WebSocket endpoint calls :func:`relay_message`, which runs the flow as a
background task so the connection's receive loop keeps serving other frames
while the store call is pending.
"""

from __future__ import annotations

import asyncio
import functools
import logging

from chat_relay.exceptions import PersistenceError
from chat_relay.models import MessageRecord
from chat_relay.services import ws_messages
from chat_relay.services.connection_manager import Connection, ConnectionManager
from chat_relay.services.conversation import counterpart_key, room_id
from chat_relay.services.message_store import MessageStore

logger = logging.getLogger(__name__)


async def persist_message(store: MessageStore, record: MessageRecord, credential: str | None) -> str | None:
    """Forward *record* to the durable store.

    Returns the store-assigned id, or ``None`` if the write failed or did not
    finish within ``store.timeout`` seconds. Never raises.
    """
    try:
        return await asyncio.wait_for(
            store.save(
                recipient_id=record.recipient_id,
                message=record.message,
                conversation_id=record.conversation_id,
                credential=credential,
            ),
            timeout=store.timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Failed to save message %s: no answer within %ss", record.id, store.timeout
        )
    except PersistenceError as exc:
        logger.warning("Failed to save message %s: %s", record.id, exc.message)
    return None


async def send_message(
    manager: ConnectionManager,
    store: MessageStore,
    sender: Connection,
    *,
    recipient_id: str | None,
    recipient_email: str | None,
    message: str,
    conversation_id: str | None = None,
    after: asyncio.Task | None = None,
) -> MessageRecord:
    """Relay one chat message from *sender*.

    If *after* is given, delivery waits for that task to finish first. The
    store call starts immediately either way.

    Returns the record that was delivered to the sender and recipient.
    """
    identity = sender.identity
    conversation_id = conversation_id or room_id(
        identity.id, counterpart_key(recipient_id, recipient_email)
    )

    local_record = MessageRecord(
        conversation_id=conversation_id,
        sender_id=identity.id,
        sender_name=identity.name,
        recipient_id=recipient_id,
        message=message,
    )
    logger.debug(
        "Message %s from %s to %s in %s",
        local_record.id,
        identity.id,
        recipient_id or recipient_email,
        conversation_id,
    )

    persistence = asyncio.ensure_future(persist_message(store, local_record, sender.credential))
    try:
        if after is not None and not after.done():
            # Keep this sender's messages in order; our store call is already running.
            await asyncio.wait([after])
        stored_id = await persistence
    finally:
        if not persistence.done():
            persistence.cancel()

    if stored_id is not None:
        delivered = local_record.model_copy(update={"id": stored_id, "persisted": True})
    else:
        delivered = local_record

    recipient = manager.lookup(user_id=recipient_id, email=recipient_email)
    if recipient is not None:
        await manager.send(recipient, ws_messages.receive_message(record=delivered))
    else:
        logger.debug("Recipient %s is offline; delivery skipped", recipient_id or recipient_email)

    await manager.send(sender, ws_messages.message_sent(record=delivered))

    # The room sees the record as built here, before the store assigned an id.
    await manager.emit_to_room(conversation_id, ws_messages.new_message(record=local_record))
    return delivered


def relay_message(
    manager: ConnectionManager,
    store: MessageStore,
    sender: Connection,
    *,
    recipient_id: str | None,
    recipient_email: str | None,
    message: str,
    conversation_id: str | None = None,
) -> asyncio.Task:
    """Start :func:`send_message` in the background and return its task.

    The caller's receive loop never waits on the store. Each relay is chained
    behind the sender's previous one, so one sender's messages are delivered in
    the order they arrived, and each still lands within ``store.timeout`` of
    its arrival.
    """
    task = asyncio.create_task(
        send_message(
            manager,
            store,
            sender,
            recipient_id=recipient_id,
            recipient_email=recipient_email,
            message=message,
            conversation_id=conversation_id,
            after=sender.last_relay,
        )
    )
    sender.last_relay = task
    sender.pending_relays.add(task)
    task.add_done_callback(functools.partial(_relay_done, sender))
    return task


def _relay_done(connection: Connection, task: asyncio.Task) -> None:
    connection.pending_relays.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Relay for connection %s failed: %s", connection.id, exc, exc_info=exc)


async def drain_relays(connection: Connection) -> None:
    """Wait for *connection*'s in-flight relays to finish.

    Used at teardown: recipients still get messages the sender sent before
    disconnecting; acknowledgments to the closed sender are dropped.
    """
    pending = list(connection.pending_relays)
    if not pending:
        return
    # Failures were already logged by _relay_done.
    await asyncio.gather(*pending, return_exceptions=True)
    connection.last_relay = None
