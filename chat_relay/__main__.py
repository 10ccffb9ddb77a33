"""Run the relay with uvicorn: ``python -m chat_relay``."""

from __future__ import annotations

import logging

import uvicorn

from chat_relay.config import get_settings

# httpx/httpcore log every connection; not useful next to relay traffic.
_NOISY_LOGGERS = ("httpx", "httpcore")


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Starting chat relay on %s:%d", settings.host, settings.port
    )
    uvicorn.run(
        "chat_relay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
