"""Timeframe normalizer: raw provider payload -> canonical PriceQuote.

Payload naming scheme (CoinGecko ``coins/{id}`` layout). Fields may sit at the
top level or under ``market_data``; values may be a bare number or a
``{"usd": number}`` mapping.

    current_price                                     mandatory
    price_change_percentage_{key}_in_currency.usd     percent, first choice
    price_change_percentage_{key}                     percent, second choice
    price_change_{key}_in_currency.usd                dollar, first choice
    price_change_{key}                                dollar, second choice

``key`` is ``1h``, ``24h``, ``7d``, ``30d`` or ``1y``. ``ALL`` never reads a
provider field; it is measured against ``ALL_TIME_REFERENCE_PRICE``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from .errors import MalformedPayload
from .models import PriceQuote, Timeframe
from .reconcile import derive_previous_price, reconcile

PRICE_DECIMAL_PLACES = 2

# "Since inception" baseline for the ALL timeframe, in USD.
ALL_TIME_REFERENCE_PRICE = 100.0

TIMEFRAME_KEYS: dict[Timeframe, str] = {
    Timeframe.H1: "1h",
    Timeframe.D1: "24h",
    Timeframe.W1: "7d",
    Timeframe.M1: "30d",
    Timeframe.Y1: "1y",
}


def _number(value: Any) -> float | None:
    if isinstance(value, Mapping):
        value = value.get("usd")
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _market_data(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise MalformedPayload(f"expected a mapping payload, got {type(payload).__name__}")
    nested = payload.get("market_data")
    return nested if isinstance(nested, Mapping) else payload


def current_price(payload: Any) -> float:
    """The payload's USD spot price. Raises MalformedPayload if absent or not positive."""
    price = _number(_market_data(payload).get("current_price"))
    if price is None or price <= 0:
        raise MalformedPayload("payload has no positive USD current price")
    return price


def change_fields(payload: Any, timeframe: Timeframe) -> tuple[float | None, float | None]:
    """(percent, dollar) for a timeframe, each None when the provider omits it."""
    data = _market_data(payload)
    key = TIMEFRAME_KEYS[timeframe]

    percent = _number(data.get(f"price_change_percentage_{key}_in_currency"))
    if percent is None:
        percent = _number(data.get(f"price_change_percentage_{key}"))

    dollar = _number(data.get(f"price_change_{key}_in_currency"))
    if dollar is None:
        dollar = _number(data.get(f"price_change_{key}"))

    return percent, dollar


def normalize(payload: Any, timeframe: Timeframe | str) -> PriceQuote:
    """Build a PriceQuote for ``timeframe``. Only a missing current price is an error."""
    timeframe = Timeframe.parse(timeframe)
    price = current_price(payload)

    if timeframe is Timeframe.ALL:
        dollar = price - ALL_TIME_REFERENCE_PRICE
        percent = dollar / ALL_TIME_REFERENCE_PRICE * 100
    else:
        percent, dollar = change_fields(payload, timeframe)

    change = reconcile(price, percent, dollar)
    return PriceQuote(
        price=round(price, PRICE_DECIMAL_PLACES),
        absolute_change=change.absolute_change,
        percent_change=change.percent_change,
        direction=change.direction,
        timeframe=timeframe,
    )


def overlay_price(base_payload: Any, live_price: float) -> dict[str, Any]:
    """Re-express a historical payload against a newer spot price.

    For every timeframe the base payload has change data for, the price at the
    start of the window is derived from the base figures and the change is
    recomputed against ``live_price``. Timeframes without data stay empty.
    """
    base = _market_data(base_payload)
    base_price = current_price(base_payload)

    merged: dict[str, Any] = dict(base)
    merged["current_price"] = {"usd": live_price}

    for timeframe, key in TIMEFRAME_KEYS.items():
        percent, dollar = change_fields(base, timeframe)
        for name in (
            f"price_change_percentage_{key}_in_currency",
            f"price_change_percentage_{key}",
            f"price_change_{key}_in_currency",
            f"price_change_{key}",
        ):
            merged.pop(name, None)

        previous: float | None = None
        if percent is not None:
            previous = derive_previous_price(base_price, percent)
        elif dollar is not None and base_price - dollar > 0:
            previous = base_price - dollar
        if previous is None:
            continue

        merged[f"price_change_percentage_{key}_in_currency"] = {
            "usd": (live_price - previous) / previous * 100
        }
        merged[f"price_change_{key}_in_currency"] = {"usd": live_price - previous}

    return {"market_data": merged}
