"""Application configuration via environment variables.

Uses pydantic-settings to load from .env file and environment variables.
All config is centralized here. Modules should import `get_settings()`.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─── Endpoints ───
    api_base_url: str = "http://localhost:3001"
    ws_url: str = "ws://localhost:3001/ws"
    request_timeout_seconds: float = 10.0

    # ─── Credential Storage ───
    encryption_key: str  # Required, no default
    credential_path: str = ".stockstream/credentials.json"
    token_validity_hours: int = 24

    # ─── App ───
    environment: str = "development"
    log_level: str = "INFO"

    # ─── Real-time Connection ───
    handshake_timeout_seconds: float = 10.0
    reconnect_attempts: int = 5
    reconnect_delay_seconds: float = 1.0

    # ─── Notifications ───
    notification_dedup_seconds: float = 10.0
    notification_timeout_seconds: float = 10.0
    vapid_private_key: str | None = None
    vapid_email: str | None = None

    # ─── Dashboard ───
    default_symbols: list[str] = [
        "RELIANCE.NS",
        "TCS.NS",
        "INFY.NS",
        "HDFCBANK.NS",
        "ICICIBANK.NS",
        "HINDUNILVR.NS",
        "SBIN.NS",
        "BHARTIARTL.NS",
        "ITC.NS",
        "LT.NS",
    ]
    currency_symbol: str = "₹"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings singleton.

    Uses lru_cache so Settings is only instantiated once.
    In tests, call `get_settings.cache_clear()` to reset.
    """
    return Settings()
