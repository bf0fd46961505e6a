from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Optional database configuration for the SQL-backed request store.
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    use_sql_repos: bool = os.getenv("USE_SQL_REPOS", "false").lower() == "true"

    # Basic API authentication configuration.
    # When ENABLE_API_AUTH=true, every endpoint requires a valid API key in
    # addition to the upstream-supplied caller identity.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated list of allowed API keys when auth is enabled.
    api_keys: Optional[str] = os.getenv("API_KEYS")

    # Largest inbound websocket frame accepted on the realtime channel.
    max_ws_bytes: int = int(os.getenv("MAX_WS_BYTES", str(64 * 1024)))

    # Pending requests never expire unless this is set. When present, pending
    # requests older than this many seconds are cancelled lazily.
    pending_request_timeout_seconds: Optional[float] = _optional_float("PENDING_REQUEST_TIMEOUT_SECONDS")

    # Root log level for the service.
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS configuration: comma-separated origins (e.g. "https://app.example.com,https://admin.example.com").
    # Default is "*" (allow all) which is acceptable for local development but
    # should be tightened in production.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")

    # Optional JSON array of users loaded into the directory at startup.
    directory_seed_file: Optional[str] = os.getenv("DIRECTORY_SEED_FILE")


settings = Settings()
