"""GBM-based synthetic tier for prices and order books."""

from __future__ import annotations

import logging
import math
import time
from typing import Any

import numpy as np

from .interface import SyntheticSource
from .normalize import TIMEFRAME_KEYS
from .seed_data import (
    ASK_STEP,
    BASE_PRICE,
    BID_STEP,
    BOOK_LEVELS,
    BTC_PARAMS,
    EVENT_PROBABILITY,
    LEVEL_AMOUNT_RANGE,
    LEVEL_JITTER,
    MIN_LEVEL_AMOUNT,
    SECONDS_PER_YEAR,
    SHOCK_RANGE,
    SYNTHETIC_CHANGES,
)

logger = logging.getLogger(__name__)


class GBMSimulator:
    """Geometric Brownian Motion simulator for the BTC spot price.

    Math:
        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    Where:
        S(t)   = current price
        mu     = annualized drift (expected return)
        sigma  = annualized volatility
        dt     = elapsed wall-clock time as a fraction of a calendar year
        Z      = standard normal random variable

    ``dt`` is measured between calls, so a simulator that is only consulted
    when every other tier has failed still moves by a plausible amount.
    """

    MIN_DT = 1.0 / SECONDS_PER_YEAR

    def __init__(
        self,
        initial_price: float = BASE_PRICE,
        sigma: float = BTC_PARAMS["sigma"],
        mu: float = BTC_PARAMS["mu"],
        event_probability: float = EVENT_PROBABILITY,
        seed: int | None = None,
    ) -> None:
        self._price = initial_price
        self._sigma = sigma
        self._mu = mu
        self._event_prob = event_probability
        self._rng = np.random.default_rng(seed)
        self._last_step_at: float | None = None

    @property
    def price(self) -> float:
        return round(self._price, 2)

    def step(self, now: float | None = None) -> float:
        """Advance the price to ``now`` and return it rounded to cents."""
        now = time.time() if now is None else now
        elapsed = 0.0 if self._last_step_at is None else max(now - self._last_step_at, 0.0)
        self._last_step_at = now
        dt = max(elapsed / SECONDS_PER_YEAR, self.MIN_DT)

        z = float(self._rng.standard_normal())
        drift = (self._mu - 0.5 * self._sigma**2) * dt
        diffusion = self._sigma * math.sqrt(dt) * z
        self._price *= math.exp(drift + diffusion)

        if self._rng.random() < self._event_prob:
            shock_magnitude = float(self._rng.uniform(*SHOCK_RANGE))
            shock_sign = 1 if self._rng.random() < 0.5 else -1
            self._price *= 1 + shock_magnitude * shock_sign
            logger.debug(
                "Synthetic shock: %.1f%% %s",
                shock_magnitude * 100,
                "up" if shock_sign > 0 else "down",
            )

        return self.price

    def levels(self, count: int = BOOK_LEVELS) -> dict[str, list[list[float]]]:
        """Ask and bid levels around the current price, in raw [price, amount] form."""
        mid = self._price
        asks = []
        bids = []
        for i in range(count):
            ask_price = mid + (i + 1) * ASK_STEP + float(self._rng.random()) * LEVEL_JITTER
            bid_price = mid - (i + 1) * BID_STEP - float(self._rng.random()) * LEVEL_JITTER
            asks.append([round(ask_price, 2), self._amount()])
            bids.append([round(bid_price, 2), self._amount()])
        return {"asks": asks, "bids": bids}

    def _amount(self) -> float:
        return round(MIN_LEVEL_AMOUNT + float(self._rng.random()) * LEVEL_AMOUNT_RANGE, 8)


class SyntheticPriceSource(SyntheticSource):
    """Price payloads in the provider naming scheme, driven by the simulator."""

    def __init__(self, simulator: GBMSimulator | None = None) -> None:
        self._sim = simulator or GBMSimulator()

    @property
    def simulator(self) -> GBMSimulator:
        return self._sim

    def generate(self) -> dict[str, Any]:
        price = self._sim.step()
        market_data: dict[str, Any] = {"current_price": {"usd": price}}
        for key in TIMEFRAME_KEYS.values():
            market_data[f"price_change_percentage_{key}_in_currency"] = {
                "usd": SYNTHETIC_CHANGES[key]
            }
        return {"market_data": market_data}


class SyntheticBookSource(SyntheticSource):
    """Order books centred on the simulator's current price."""

    def __init__(self, simulator: GBMSimulator | None = None, levels: int = BOOK_LEVELS) -> None:
        self._sim = simulator or GBMSimulator()
        self._levels = levels

    def generate(self) -> dict[str, Any]:
        self._sim.step()
        return self._sim.levels(self._levels)
