"""Data models for the market-data feeds."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class Timeframe(str, Enum):
    """Window over which price change is reported."""

    H1 = "1H"
    D1 = "1D"
    W1 = "1W"
    M1 = "1M"
    Y1 = "1Y"
    ALL = "ALL"

    @classmethod
    def parse(cls, value: str | Timeframe) -> Timeframe:
        """Accept '1d', '1D' or a Timeframe. Raises ValueError on anything else."""
        if isinstance(value, Timeframe):
            return value
        return cls(value.strip().upper())


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"


class Source(str, Enum):
    """Which tier of the fallback chain produced a value."""

    LIVE = "live"
    REST_FALLBACK = "rest_fallback"
    CACHE_FALLBACK = "cache_fallback"
    SYNTHETIC = "synthetic"


class Tier(str, Enum):
    LIVE = "live"
    REST = "rest"
    CACHE = "cache"
    SYNTHETIC = "synthetic"


class FeedStatus(str, Enum):
    """States of the per-feed fallback state machine."""

    ACQUIRING_LIVE = "acquiring_live"
    LIVE = "live"
    DEGRADED = "degraded"
    ACQUIRING_REST = "acquiring_rest"
    REST_OK = "rest_ok"
    REST_FAILED = "rest_failed"
    CACHE_FALLBACK = "cache_fallback"
    SYNTHETIC = "synthetic"


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """Immutable canonical quote for one timeframe.

    Both change figures are non-negative magnitudes; the sign lives in
    ``direction``.
    """

    price: float
    absolute_change: float
    percent_change: float
    direction: Direction
    timeframe: Timeframe
    timestamp: float = field(default_factory=time.time)  # Unix seconds

    @property
    def signed_percent(self) -> float:
        return -self.percent_change if self.direction is Direction.DOWN else self.percent_change

    @property
    def previous_price(self) -> float:
        """Price at the start of the timeframe, derived from the percent change."""
        return round(self.price / (1 + self.signed_percent / 100), 2)

    def to_dict(self) -> dict:
        """Serialize for JSON / SSE transmission."""
        return {
            "price": self.price,
            "absolute_change": self.absolute_change,
            "percent_change": self.percent_change,
            "direction": self.direction.value,
            "timeframe": self.timeframe.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class Acquired(Generic[T]):
    """A value produced by the fallback chain, tagged with the tier it came from.

    ``stale`` is only ever true for ``Source.CACHE_FALLBACK`` and marks data
    older than the cache TTL that is still served as better than nothing.
    """

    value: T
    source: Source
    stale: bool = False
    acquired_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {
            "value": value,
            "source": self.source.value,
            "stale": self.stale,
            "acquired_at": self.acquired_at,
        }
