"""Looper client configuration.

All settings are prefixed with ``LOOPER_`` (e.g. ``LOOPER_BASE_URL``).
Defaults work against a server running locally on port 8000 without any env
vars set.
"""
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class LooperClientSettings(BaseSettings):
    """Runtime configuration for the replica, poller and CLI."""

    model_config = SettingsConfigDict(env_prefix="LOOPER_")

    base_url: str = "http://localhost:8000"
    poll_window_seconds: int = 10
    # Round-trips shorter than this are assumed to come from a cached layer;
    # their song timestamps are not trusted.
    staleness_threshold_seconds: float = 0.1
    poll_error_backoff_seconds: float = 1.0
    request_timeout_seconds: float = 5.0
    clock_tick_hz: float = 20.0
    log_level: str = "INFO"


settings = LooperClientSettings()
