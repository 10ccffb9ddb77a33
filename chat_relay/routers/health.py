"""Diagnostic endpoints -- no auth required."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request

from chat_relay import __version__

router = APIRouter()

_start_time = time.monotonic()


@router.get("/")
async def relay_status(request: Request):
    """Return the number of open connections and online users."""
    manager = request.app.state.connection_manager
    return {
        "status": "Chat relay running",
        "connectedUsers": manager.active_count,
        "onlineUsers": len(manager.registry),
        "message": "WebSocket relay only - message history lives in the REST backend",
    }


@router.get("/health")
async def health_check():
    """Liveness probe."""
    return {
        "status": "ok",
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "version": __version__,
    }
