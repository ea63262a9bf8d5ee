"""Per-feed fetch bookkeeping owned by the fallback controller."""

from __future__ import annotations

import time
from dataclasses import dataclass

from .models import Tier


@dataclass
class FetchState:
    """Process-local health of one feed.

    Lives for the page session. ``reset()`` is called when the live tier
    reconnects from scratch.
    """

    last_success_at: float | None = None
    last_error_at: float | None = None
    current_tier: Tier | None = None
    consecutive_failures: int = 0

    def record_success(self, tier: Tier, at: float | None = None) -> None:
        """A tier served data. Only network tiers clear the failure streak."""
        self.current_tier = tier
        if tier in (Tier.LIVE, Tier.REST):
            self.last_success_at = at or time.time()
            self.consecutive_failures = 0

    def record_failure(self, at: float | None = None) -> None:
        self.last_error_at = at or time.time()
        self.consecutive_failures += 1

    def reset(self) -> None:
        self.last_success_at = None
        self.last_error_at = None
        self.current_tier = None
        self.consecutive_failures = 0

    def to_dict(self) -> dict:
        return {
            "last_success_at": self.last_success_at,
            "last_error_at": self.last_error_at,
            "current_tier": self.current_tier.value if self.current_tier else None,
            "consecutive_failures": self.consecutive_failures,
        }
