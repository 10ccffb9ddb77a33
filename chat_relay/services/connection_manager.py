"""WebSocket connection lifecycle manager.

Singleton instantiated in ``main.py`` lifespan and stored on ``app.state``.
Owns every ``Connection`` from handshake to teardown:

    CONNECTING -> AUTHENTICATING -> ACTIVE -> CLOSED
                        \\-------------------> CLOSED (rejected)

Only the manager mutates the presence registry, the set of active connections
and room membership. All of those mutations happen in synchronous code with no
``await`` in between, so under the single event loop they are atomic with
respect to other connections' tasks.

Sends never raise: a handle whose transport has gone away is skipped and
logged at debug level.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from starlette.websockets import WebSocket

from chat_relay.exceptions import AuthError
from chat_relay.models import Identity
from chat_relay.services import ws_messages
from chat_relay.services.presence_registry import PresenceRegistry
from chat_relay.services.token_verifier import TokenVerifier

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One live transport session.

    Compared by object identity, so two ``Connection`` objects for the same
    user are never equal.
    """

    websocket: WebSocket
    id: str = field(default_factory=lambda: uuid4().hex)
    state: ConnectionState = ConnectionState.CONNECTING
    identity: Identity | None = None
    # Original bearer token; only used to authorize the message store call.
    credential: str | None = None
    joined_rooms: set[str] = field(default_factory=set)
    # send-message relays still in flight; the newest one is kept for ordering.
    pending_relays: set[asyncio.Task] = field(default_factory=set)
    last_relay: asyncio.Task | None = None

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    async def send(self, message: dict) -> bool:
        """Send *message* as JSON. Returns ``False`` if it could not be sent."""
        if self.state is ConnectionState.CLOSED:
            return False
        try:
            await self.websocket.send_json(message)
        except Exception as exc:
            logger.debug("Dropped %s for connection %s: %s", message.get("type"), self.id, exc)
            return False
        return True


class ConnectionManager:
    """Tracks active connections, their rooms and their presence entries."""

    def __init__(self, registry: PresenceRegistry, verifier: TokenVerifier) -> None:
        self.registry = registry
        self._verifier = verifier
        self._active: set[Connection] = set()
        self._rooms: dict[str, set[Connection]] = {}

    @property
    def active_count(self) -> int:
        return len(self._active)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def admit(self, connection: Connection, token: str | None) -> Identity:
        """Authenticate *connection* and make it active.

        On success the presence registry is updated, the new connection gets a
        ``connected`` acknowledgment, every other connection gets
        ``user-online`` and everyone (including the new connection) gets the
        full ``online-status`` snapshot.

        Raises:
            AuthError: The credential is missing or rejected. The connection
                is left CLOSED with no registry change and no broadcast.
        """
        if connection.state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"Connection {connection.id} is already {connection.state.value}")

        connection.state = ConnectionState.AUTHENTICATING
        try:
            identity = await self._verifier.verify(token)
        except AuthError:
            connection.state = ConnectionState.CLOSED
            raise

        connection.identity = identity
        connection.credential = token
        connection.state = ConnectionState.ACTIVE
        self.registry.register(identity, connection)
        self._active.add(connection)

        logger.info(
            "User connected: %s (%s) via %s, connection %s",
            identity.name,
            identity.id,
            identity.auth_method.value,
            connection.id,
        )

        await connection.send(ws_messages.connected(identity=identity))
        await self.broadcast(ws_messages.user_online(identity=identity), exclude=connection)
        await self.broadcast(ws_messages.online_status_snapshot(snapshot=self.registry.snapshot()))
        return identity

    async def release(self, connection: Connection) -> None:
        """Tear down *connection* after a transport-level disconnect.

        Safe to call more than once and for connections that never became
        active.
        """
        was_active = connection.is_active
        connection.state = ConnectionState.CLOSED
        if not was_active:
            return

        identity = connection.identity
        self._active.discard(connection)
        self._leave_all_rooms(connection)
        owned_presence = self.registry.unregister(identity, connection)

        logger.info("User disconnected: %s (%s), connection %s", identity.name, identity.id, connection.id)

        if owned_presence:
            await self.broadcast(ws_messages.user_offline(identity=identity))
        else:
            logger.debug("Presence for %s already held by a newer connection", identity.id)
        await self.broadcast(ws_messages.online_status_snapshot(snapshot=self.registry.snapshot()))

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def join_room(self, connection: Connection, room: str) -> None:
        if not connection.is_active:
            return
        self._rooms.setdefault(room, set()).add(connection)
        connection.joined_rooms.add(room)

    def room_members(self, room: str) -> set[Connection]:
        return set(self._rooms.get(room, ()))

    def _leave_all_rooms(self, connection: Connection) -> None:
        for room in connection.joined_rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(connection)
            if not members:
                del self._rooms[room]
        connection.joined_rooms.clear()

    # -----------------------------------------------------------------------
    # Delivery
    # -----------------------------------------------------------------------

    def lookup(self, *, user_id: str | None = None, email: str | None = None) -> Connection | None:
        """Resolve a recipient's live connection by id, then email."""
        return self.registry.lookup(user_id=user_id, email=email)

    async def send(self, connection: Connection, message: dict) -> bool:
        return await connection.send(message)

    async def broadcast(self, message: dict, *, exclude: Connection | None = None) -> None:
        """Send *message* to every active connection except *exclude*."""
        targets = [conn for conn in self._active if conn is not exclude]
        await self._fan_out(targets, message)

    async def emit_to_room(self, room: str, message: dict) -> None:
        """Send *message* to every connection that joined *room*."""
        await self._fan_out(self.room_members(room), message)

    async def _fan_out(self, targets: Iterable[Connection], message: dict) -> None:
        targets = list(targets)
        if not targets:
            return
        await asyncio.gather(*(conn.send(message) for conn in targets))
