"""Configuration helpers for the bot."""
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class Settings:
    """Runtime settings loaded from the environment."""

    discord_token: str
    database_path: str = "data/exchange.db"
    bump_interval_minutes: int = 60
    bump_days_inactive: int = 6
    max_auto_bumps: int = 3
    claim_expiry_minutes: int = 5
    claim_sweep_minutes: int = 10
    settings_cache_ttl_seconds: int = 300


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise RuntimeError(f"{name} must not be negative")
    return value


def load_settings() -> Settings:
    """Load settings from environment variables.

    The function will read a local `.env` file when present.
    """

    load_dotenv()
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN is required to run the bot")

    return Settings(
        discord_token=token,
        database_path=os.getenv("EXCHANGE_DB_PATH", "data/exchange.db"),
        bump_interval_minutes=_int_env("BUMP_INTERVAL_MINUTES", 60),
        bump_days_inactive=_int_env("BUMP_DAYS_INACTIVE", 6),
        max_auto_bumps=_int_env("MAX_AUTO_BUMPS", 3),
        claim_expiry_minutes=_int_env("CLAIM_EXPIRY_MINUTES", 5),
        claim_sweep_minutes=_int_env("CLAIM_SWEEP_MINUTES", 10),
        settings_cache_ttl_seconds=_int_env("SETTINGS_CACHE_TTL_SECONDS", 300),
    )
