"""FastAPI application entry point.

Application wiring: lifespan, middleware stack, router mounting, exception handlers.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from chat_relay import __version__
from chat_relay.config import get_settings
from chat_relay.routers import health
from chat_relay.routers.websocket import router as ws_router
from chat_relay.services.connection_manager import ConnectionManager
from chat_relay.services.message_store import MessageStore
from chat_relay.services.presence_registry import PresenceRegistry
from chat_relay.services.signaling import TypingStatus
from chat_relay.services.token_verifier import TokenVerifier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the in-memory registry and outbound clients; close them on shutdown."""
    settings = get_settings()

    verifier = TokenVerifier(
        jwt_secret=settings.jwt_secret,
        jwt_algorithms=settings.allowed_algorithms,
        google_client_id=settings.google_client_id,
        google_certs_url=settings.google_certs_url,
    )
    registry = PresenceRegistry()
    message_store = MessageStore(settings.rest_api_url, timeout=settings.rest_api_timeout)

    application.state.token_verifier = verifier
    application.state.connection_manager = ConnectionManager(registry, verifier)
    application.state.message_store = message_store
    application.state.typing_status = TypingStatus()

    logger.info(
        "Chat relay ready: federated auth %s, message store %s (timeout %.1fs)",
        "enabled" if settings.google_client_id else "disabled",
        settings.rest_api_url,
        settings.rest_api_timeout,
    )

    yield

    # -- Shutdown --
    await message_store.aclose()
    logger.info("Chat relay shut down")


# ---------------------------------------------------------------------------
# Custom Middleware
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status_code, duration_ms for every request."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start_time) * 1000

        logger.info(
            "%s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and return a standard JSON 500 response."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                "Unhandled exception on %s %s: %s",
                request.method,
                request.url.path,
                exc,
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "details": str(exc)},
            )


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(title="Chat Relay", version=__version__, lifespan=lifespan)

settings = get_settings()

# Middleware is applied in reverse order of add_middleware calls.
# Order: CORS -> RequestLogging -> ErrorHandling
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_credentials=True,
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(ErrorHandlingMiddleware)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Normalize HTTP errors, routing 404s included, to the standard error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
    )


# -- Routers --
app.include_router(health.router, tags=["health"])
app.include_router(ws_router)
