"""WebSocket test configuration.

Creates a minimal FastAPI test app that only mounts the WebSocket router,
with the relay's services placed on ``app.state`` the way the lifespan in
``chat_relay.main`` would.
"""

from __future__ import annotations

import json

import httpx
import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from chat_relay.routers.websocket import router as ws_router
from chat_relay.services.connection_manager import ConnectionManager
from chat_relay.services.message_store import MessageStore
from chat_relay.services.signaling import TypingStatus


def create_test_app(manager: ConnectionManager, message_store: MessageStore) -> FastAPI:
    """Build a minimal FastAPI app with only the WebSocket router."""
    test_app = FastAPI()
    test_app.include_router(ws_router)
    test_app.state.connection_manager = manager
    test_app.state.message_store = message_store
    test_app.state.typing_status = TypingStatus()
    return test_app


@pytest.fixture
def ws_store_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def ws_message_store(ws_store_requests) -> MessageStore:
    """Message store stub answering ``{"data": {"_id": "db-<n>"}}``.

    MockTransport keeps no connections, so the client is safe to use from the
    TestClient's own event loop.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        ws_store_requests.append(request)
        body = json.loads(request.content)
        return httpx.Response(201, json={"data": {"_id": f"db-{len(ws_store_requests)}", **body}})

    return MessageStore("http://store.test", timeout=1.0, transport=httpx.MockTransport(handler))


@pytest.fixture
def ws_app(manager, ws_message_store) -> FastAPI:
    return create_test_app(manager, ws_message_store)


@pytest.fixture
def client(ws_app) -> TestClient:
    """Starlette TestClient for synchronous WebSocket testing."""
    return TestClient(ws_app)
