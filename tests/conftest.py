"""Shared pytest fixtures for chat relay tests.

Provides:
- ``registry``: an empty PresenceRegistry
- ``verifier``: a TokenVerifier for locally issued tokens only
- ``manager``: a ConnectionManager over ``registry`` and ``verifier``
- ``typing_status``: an empty TypingStatus table
- ``store_requests`` / ``message_store``: a MessageStore backed by
  ``httpx.MockTransport`` that records every request and assigns ids
"""

from __future__ import annotations

import json
import os

from tests.factories import TEST_JWT_SECRET

# Set required env vars before any app module imports
os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from chat_relay.services.connection_manager import ConnectionManager  # noqa: E402
from chat_relay.services.message_store import MessageStore  # noqa: E402
from chat_relay.services.presence_registry import PresenceRegistry  # noqa: E402
from chat_relay.services.signaling import TypingStatus  # noqa: E402
from chat_relay.services.token_verifier import TokenVerifier  # noqa: E402

STORE_URL = "http://store.test"


@pytest.fixture
def registry() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier(jwt_secret=TEST_JWT_SECRET)


@pytest.fixture
def manager(registry, verifier) -> ConnectionManager:
    return ConnectionManager(registry, verifier)


@pytest.fixture
def typing_status() -> TypingStatus:
    return TypingStatus()


@pytest.fixture
def store_requests() -> list[httpx.Request]:
    """Requests received by the fake message store, in order."""
    return []


@pytest_asyncio.fixture
async def message_store(store_requests):
    """MessageStore whose backend answers ``{"data": {"_id": "db-<n>"}}``."""

    def handler(request: httpx.Request) -> httpx.Response:
        store_requests.append(request)
        body = json.loads(request.content)
        return httpx.Response(
            201,
            json={"data": {"_id": f"db-{len(store_requests)}", **body}},
        )

    store = MessageStore(STORE_URL, timeout=1.0, transport=httpx.MockTransport(handler))
    yield store
    await store.aclose()
