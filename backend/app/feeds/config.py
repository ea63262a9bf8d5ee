"""Engine configuration with documented defaults."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

# Order-book levels shown per viewport class
DISPLAY_DEPTHS: dict[str, int] = {
    "mobile": 5,
    "tablet": 8,
    "desktop": 12,
}

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FeedConfig:
    """Timing and tier settings shared by the price and order-book feeds.

    Durations are seconds. Every tier timeout must be shorter than the refresh
    interval so a tier decision is always reached before the next tick.
    """

    refresh_interval: float = 5.0
    live_timeout: float = 1.5
    rest_timeout: float = 3.0
    cache_ttl: float = 60.0
    coalesce_window: float = 1.0
    reconnect_backoff: float = 1.0
    live_max_age: float = 10.0
    rest_retry_backoff: float = 5.0  # doubled per failed background retry
    rest_max_per_minute: int = 25
    rest_min_interval: float = 3.0
    display_depth: int = DISPLAY_DEPTHS["desktop"]
    synthetic_enabled: bool = True
    offline: bool = False
    coingecko_api_key: str = ""

    def __post_init__(self) -> None:
        for name in (
            "refresh_interval",
            "live_timeout",
            "rest_timeout",
            "cache_ttl",
            "coalesce_window",
            "reconnect_backoff",
            "live_max_age",
            "rest_retry_backoff",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.rest_min_interval < 0:
            raise ValueError("rest_min_interval must not be negative")
        if self.rest_max_per_minute < 1:
            raise ValueError("rest_max_per_minute must be at least 1")
        for name in ("live_timeout", "rest_timeout"):
            if getattr(self, name) >= self.refresh_interval:
                raise ValueError(f"{name} must be shorter than refresh_interval")
        if self.display_depth < 1:
            raise ValueError("display_depth must be at least 1")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> FeedConfig:
        """Read BTC_* variables (milliseconds) from the environment.

        Unset variables fall back to the dataclass defaults.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}

        millis = {
            "refresh_interval": "BTC_REFRESH_INTERVAL_MS",
            "live_timeout": "BTC_LIVE_TIMEOUT_MS",
            "rest_timeout": "BTC_REST_TIMEOUT_MS",
            "cache_ttl": "BTC_CACHE_TTL_MS",
            "coalesce_window": "BTC_COALESCE_WINDOW_MS",
            "reconnect_backoff": "BTC_RECONNECT_BACKOFF_MS",
            "live_max_age": "BTC_LIVE_MAX_AGE_MS",
            "rest_retry_backoff": "BTC_REST_RETRY_BACKOFF_MS",
            "rest_min_interval": "BTC_REST_MIN_INTERVAL_MS",
        }
        for field_name, var in millis.items():
            raw = env.get(var, "").strip()
            if raw:
                kwargs[field_name] = float(raw) / 1000.0

        per_minute = env.get("BTC_REST_MAX_PER_MINUTE", "").strip()
        if per_minute:
            kwargs["rest_max_per_minute"] = int(per_minute)

        viewport = env.get("BTC_VIEWPORT", "").strip().lower()
        if viewport:
            if viewport not in DISPLAY_DEPTHS:
                raise ValueError(f"unknown viewport class: {viewport!r}")
            kwargs["display_depth"] = DISPLAY_DEPTHS[viewport]

        synthetic = env.get("BTC_SYNTHETIC_ENABLED", "").strip().lower()
        if synthetic:
            kwargs["synthetic_enabled"] = synthetic in _TRUE_VALUES

        kwargs["offline"] = env.get("BTC_OFFLINE", "").strip().lower() in _TRUE_VALUES
        kwargs["coingecko_api_key"] = env.get("COINGECKO_API_KEY", "").strip()

        return cls(**kwargs)  # type: ignore[arg-type]
