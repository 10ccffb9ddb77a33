"""In-memory presence registry.

Maps user ids and emails to the connection currently serving that user. The
identity provider sometimes gives us only one of the two, so both keys are
indexed.

The registry holds lookup references only: a ``Connection`` owns itself and
the connection manager removes it here when it closes. Every method is
synchronous with no suspension points, so under a single event loop each call
is atomic with respect to other connections' tasks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chat_relay.models import Identity
    from chat_relay.services.connection_manager import Connection


@dataclass(frozen=True)
class PresenceSnapshot:
    """Point-in-time view of who is online, by id and by email."""

    user_ids: frozenset[str]
    emails: frozenset[str]


class PresenceRegistry:
    """Dual-keyed index from identity to live connection (last writer wins)."""

    def __init__(self) -> None:
        self._by_id: dict[str, Connection] = {}
        self._by_email: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def register(self, identity: Identity, handle: Connection) -> None:
        """Point *identity*'s keys at *handle*, evicting any earlier mapping."""
        self._by_id[identity.id] = handle
        if identity.email:
            self._by_email[identity.email] = handle

    def unregister(self, identity: Identity, handle: Connection) -> bool:
        """Remove *identity*'s entries, but only those still pointing at *handle*.

        A newer connection for the same identity may already have replaced the
        entries; in that case they are left alone. Returns ``True`` if the
        id-keyed entry was removed.
        """
        removed = False
        if self._by_id.get(identity.id) is handle:
            del self._by_id[identity.id]
            removed = True
        if identity.email and self._by_email.get(identity.email) is handle:
            del self._by_email[identity.email]
        return removed

    def lookup_by_id(self, user_id: str) -> Connection | None:
        return self._by_id.get(user_id)

    def lookup_by_email(self, email: str) -> Connection | None:
        return self._by_email.get(email)

    def lookup(
        self,
        *,
        user_id: str | None = None,
        email: str | None = None,
    ) -> Connection | None:
        """Resolve by user id first, then by email. ``None`` if offline."""
        handle = None
        if user_id:
            handle = self._by_id.get(user_id)
        if handle is None and email:
            handle = self._by_email.get(email)
        return handle

    def is_online(self, user_id: str) -> bool:
        """Id-keyed presence check."""
        return user_id in self._by_id

    def snapshot(self) -> PresenceSnapshot:
        return PresenceSnapshot(
            user_ids=frozenset(self._by_id),
            emails=frozenset(self._by_email),
        )
