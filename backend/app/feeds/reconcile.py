"""Dollar/percent change reconciliation.

Providers report change over a timeframe as a percent, as a dollar amount, or
both. ``reconcile`` turns whatever is present into a consistent pair of
non-negative magnitudes plus a direction, using

    previous_price = price / (1 + signed_percent / 100)

to derive the missing figure.

Minimum visible change
----------------------
When the source gives no usable change, or the change is below
``MIN_VISIBLE_PERCENT``, the result is the fixed minimum visible change
(0.01% of price, never below one cent) instead of zero. This is a product
policy: the dashboard never renders an ambiguous payload as "no change".
"""

from __future__ import annotations

import logging
import math
from typing import NamedTuple

from .models import Direction

logger = logging.getLogger(__name__)

MIN_VISIBLE_PERCENT = 0.01  # percent units, i.e. 0.01%
MIN_VISIBLE_DOLLARS = 0.01  # one cent
CHANGE_DECIMAL_PLACES = 2


class Reconciled(NamedTuple):
    absolute_change: float
    percent_change: float
    direction: Direction


def _usable(value: float | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def derive_previous_price(price: float, percent: float) -> float | None:
    """Invert a percent change. None when the change cannot be inverted (<= -100%)."""
    factor = 1 + percent / 100
    if factor <= 0:
        return None
    return price / factor


def minimum_visible_change(price: float) -> tuple[float, float]:
    """(absolute, percent) floor shown when the real change is missing or negligible."""
    absolute = max(price * MIN_VISIBLE_PERCENT / 100, MIN_VISIBLE_DOLLARS)
    return round(absolute, CHANGE_DECIMAL_PLACES), MIN_VISIBLE_PERCENT


def reconcile(price: float, percent: float | None, dollar: float | None) -> Reconciled:
    """Derive (absolute_change, percent_change, direction) from partial inputs.

    Percent is authoritative for direction whenever it is present. A zero on one
    side while the other side is non-zero counts as that side missing.
    """
    percent = _usable(percent)
    dollar = _usable(dollar)

    if percent is not None and dollar is not None:
        if percent == 0 and dollar != 0:
            percent = None
        elif dollar == 0 and percent != 0:
            dollar = None

    absolute: float | None = None
    signed_percent: float | None = None

    if percent is not None and dollar is not None:
        absolute = abs(dollar)
        signed_percent = percent
    elif percent is not None:
        previous = derive_previous_price(price, percent)
        if previous is not None:
            absolute = abs(price - previous)
            signed_percent = percent
        else:
            logger.debug("Percent change %.4f cannot be inverted; treating as missing", percent)
    elif dollar is not None:
        previous = price - dollar
        if previous > 0:
            absolute = abs(dollar)
            signed_percent = dollar / previous * 100
        else:
            logger.debug("Dollar change %.2f implies non-positive previous price", dollar)

    direction = Direction.DOWN if signed_percent is not None and signed_percent < 0 else Direction.UP

    if signed_percent is None or abs(signed_percent) < MIN_VISIBLE_PERCENT:
        floor_absolute, floor_percent = minimum_visible_change(price)
        return Reconciled(floor_absolute, floor_percent, direction)

    # Rounding must not turn a real change into a zero dollar figure.
    return Reconciled(
        max(round(absolute, CHANGE_DECIMAL_PLACES), MIN_VISIBLE_DOLLARS),
        round(abs(signed_percent), CHANGE_DECIMAL_PLACES),
        direction,
    )
