"""Application configuration loaded from environment variables."""

from __future__ import annotations

import functools

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Chat relay settings.

    Required fields must be set via environment variables (or ``.env`` file).
    Optional fields have defaults suitable for local development.
    """

    # Required
    jwt_secret: str

    # Optional with defaults
    jwt_algorithms: str = "HS256"
    google_client_id: str | None = None
    google_certs_url: str = "https://www.googleapis.com/oauth2/v3/certs"
    rest_api_url: str = "http://localhost:5000"
    rest_api_timeout: float = 5.0
    frontend_url: str = "http://localhost:3000"
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "info"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @property
    def allowed_algorithms(self) -> list[str]:
        """``jwt_algorithms`` split into a list."""
        return [alg.strip() for alg in self.jwt_algorithms.split(",") if alg.strip()]

    @property
    def cors_origins(self) -> list[str]:
        """``frontend_url`` split into a list of allowed origins."""
        return [origin.strip() for origin in self.frontend_url.split(",") if origin.strip()]


@functools.lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance (singleton)."""
    return Settings()
