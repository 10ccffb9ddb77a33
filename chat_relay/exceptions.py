"""Domain exception classes for the chat relay.

``AuthError`` ends a connection attempt before it becomes active.
``PersistenceError`` is raised by the message store client and is always
recovered by the relay; it never reaches a client.
"""

from __future__ import annotations


class AuthError(Exception):
    """Raised when a credential is missing or rejected by every issuer."""

    def __init__(self, message: str, *, reasons: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        # Per-issuer failure detail, for debug logging only.
        self.reasons = reasons or {}


class PersistenceError(Exception):
    """Raised when the durable message store cannot take a message."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
