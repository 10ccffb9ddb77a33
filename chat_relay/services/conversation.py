"""Conversation addressing.

A two-party conversation has no stored identity; its room id is derived from
the two participants so both sides compute the same value.
"""

from __future__ import annotations

UNKNOWN_PARTICIPANT = "unknown"


def room_id(user_a: str, user_b: str) -> str:
    """Return the order-independent room id for *user_a* and *user_b*."""
    return "_".join(sorted([user_a, user_b]))


def counterpart_key(recipient_id: str | None, recipient_email: str | None) -> str:
    """Pick the key that stands in for the other participant.

    Prefers the user id, then the email, then the literal ``"unknown"``.
    """
    return recipient_id or recipient_email or UNKNOWN_PARTICIPANT
