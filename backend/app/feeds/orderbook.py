"""Order book snapshots, level bookkeeping and snapshot diffing.

Sorting, notional and cumulative depth are re-derived from the full level maps
on every snapshot. Nothing is patched from a previous snapshot's cumulative
values, so a missed intermediate update can never leave drift behind.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from itertools import accumulate
from typing import Any

from .cache import FeedBoard
from .errors import MalformedPayload
from .models import Acquired, Source

logger = logging.getLogger(__name__)

LevelPairs = list[tuple[float, float]]


@dataclass(frozen=True, slots=True)
class OrderBookLevel:
    price: float
    amount: float
    notional: float  # price * amount, USD
    cumulative: float  # running sum of amount from the best price outward

    def to_dict(self) -> dict:
        return {
            "price": self.price,
            "amount": self.amount,
            "notional": self.notional,
            "cumulative": self.cumulative,
        }


@dataclass(frozen=True, slots=True)
class OrderBookSnapshot:
    """Complete, immutable view of the book at one instant.

    Asks ascending by price, bids descending. ``spread`` is 0 when either
    side is empty.
    """

    asks: tuple[OrderBookLevel, ...]
    bids: tuple[OrderBookLevel, ...]
    spread: float
    source: Source
    observed_at: float = field(default_factory=time.time)

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def mid_price(self) -> float | None:
        if not self.asks or not self.bids:
            return None
        return round((self.asks[0].price + self.bids[0].price) / 2, 8)

    def to_dict(self, depth: int | None = None) -> dict:
        """Serialize for JSON / SSE. ``depth`` trims each side for display only."""
        asks = self.asks if depth is None else self.asks[:depth]
        bids = self.bids if depth is None else self.bids[:depth]
        return {
            "asks": [level.to_dict() for level in asks],
            "bids": [level.to_dict() for level in bids],
            "spread": self.spread,
            "best_ask": self.best_ask,
            "best_bid": self.best_bid,
            "source": self.source.value,
            "observed_at": self.observed_at,
        }


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("bool is not a price or amount")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"non-finite value {value!r}")
    return number


def parse_levels(raw_levels: Iterable[Any] | None, side: str = "") -> LevelPairs:
    """Turn ``[[price, amount], ...]`` into float pairs, skipping malformed entries."""
    pairs: LevelPairs = []
    for entry in raw_levels or ():
        try:
            price = _to_float(entry[0])
            amount = _to_float(entry[1])
        except (IndexError, KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed %s level %r: %s", side or "book", entry, e)
            continue
        if price <= 0 or amount < 0:
            logger.warning("Skipping out-of-range %s level %r", side or "book", entry)
            continue
        pairs.append((price, amount))
    return pairs


def parse_book(raw: Any) -> tuple[LevelPairs, LevelPairs]:
    """Split a raw ``{"asks": ..., "bids": ...}`` payload into (asks, bids) pairs."""
    if not isinstance(raw, Mapping) or ("asks" not in raw and "bids" not in raw):
        raise MalformedPayload("order book payload needs an 'asks' or 'bids' list")
    return parse_levels(raw.get("asks"), "ask"), parse_levels(raw.get("bids"), "bid")


def _levels(pairs: Iterable[tuple[float, float]], descending: bool) -> tuple[OrderBookLevel, ...]:
    by_price: dict[float, float] = {}
    for price, amount in pairs:
        by_price[price] = amount  # Last write wins for duplicate prices
    ordered = sorted(
        ((p, a) for p, a in by_price.items() if a > 0),
        key=lambda item: item[0],
        reverse=descending,
    )
    running = accumulate(amount for _, amount in ordered)
    return tuple(
        OrderBookLevel(price=price, amount=amount, notional=price * amount, cumulative=cumulative)
        for (price, amount), cumulative in zip(ordered, running)
    )


def build_snapshot(
    asks: Iterable[tuple[float, float]],
    bids: Iterable[tuple[float, float]],
    source: Source,
    observed_at: float | None = None,
) -> OrderBookSnapshot:
    """Sort both sides, derive notional/cumulative and the spread. Pure."""
    ask_levels = _levels(asks, descending=False)
    bid_levels = _levels(bids, descending=True)

    spread = 0.0
    if ask_levels and bid_levels:
        spread = round(ask_levels[0].price - bid_levels[0].price, 8)
        if spread < 0:
            logger.debug(
                "Crossed book: best_ask=%s < best_bid=%s", ask_levels[0].price, bid_levels[0].price
            )
            spread = 0.0

    return OrderBookSnapshot(
        asks=ask_levels,
        bids=bid_levels,
        spread=spread,
        source=source,
        observed_at=time.time() if observed_at is None else observed_at,
    )


def _side_changes(
    previous: tuple[OrderBookLevel, ...],
    current: tuple[OrderBookLevel, ...],
    depth: int | None,
) -> set[float]:
    prev_amounts = {level.price: level.amount for level in previous}
    next_amounts = {level.price: level.amount for level in current}
    prev_visible = previous if depth is None else previous[:depth]
    next_visible = current if depth is None else current[:depth]

    changed = {
        level.price
        for level in next_visible
        if prev_amounts.get(level.price) != level.amount
    }
    changed.update(level.price for level in prev_visible if level.price not in next_amounts)
    return changed


def diff(
    previous: OrderBookSnapshot | None,
    current: OrderBookSnapshot,
    depth: int | None = None,
) -> frozenset[float]:
    """Prices whose level is new, removed or has a different amount.

    With ``depth``, only the first ``depth`` levels of each side are examined.
    Against no previous snapshot every visible level counts as new.
    """
    if previous is None:
        asks = current.asks if depth is None else current.asks[:depth]
        bids = current.bids if depth is None else current.bids[:depth]
        return frozenset(level.price for level in (*asks, *bids))
    changed = _side_changes(previous.asks, current.asks, depth)
    changed |= _side_changes(previous.bids, current.bids, depth)
    return frozenset(changed)


class BookLevels:
    """Mutable price -> amount maps for both sides of a book.

    Backs ``OrderBookManager`` when a full book is assembled from deltas.
    """

    def __init__(self) -> None:
        self.asks: dict[float, float] = {}
        self.bids: dict[float, float] = {}

    def replace(self, asks: LevelPairs, bids: LevelPairs) -> None:
        self.asks = {price: amount for price, amount in asks if amount > 0}
        self.bids = {price: amount for price, amount in bids if amount > 0}

    def update(self, asks: LevelPairs, bids: LevelPairs) -> bool:
        """Apply deltas; a zero amount removes the level. Returns True if anything changed."""
        changed = False
        for book, pairs in ((self.asks, asks), (self.bids, bids)):
            for price, amount in pairs:
                if amount == 0:
                    if book.pop(price, None) is not None:
                        changed = True
                elif book.get(price) != amount:
                    book[price] = amount
                    changed = True
        return changed

    def __len__(self) -> int:
        return len(self.asks) + len(self.bids)


class OrderBookManager:
    """Holds the current snapshot and the levels that changed with the last one.

    Raw exchange books enter through ``apply_snapshot``/``apply_update`` (the
    live level-2 feed assembles its book this way). Snapshots the controller
    already built enter through ``publish`` from ``OrderBookBoard``.

    ``changed_levels`` is a transient highlight signal: it is recomputed on
    every publish and never accumulated.
    """

    def __init__(self, display_depth: int | None = None) -> None:
        self._levels = BookLevels()
        self._display_depth = display_depth
        self._snapshot: OrderBookSnapshot | None = None
        self._changed: frozenset[float] = frozenset()
        self._initialized = False

    @property
    def snapshot(self) -> OrderBookSnapshot | None:
        return self._snapshot

    @property
    def changed_levels(self) -> frozenset[float]:
        return self._changed

    @property
    def display_depth(self) -> int | None:
        return self._display_depth

    def apply_snapshot(
        self,
        raw: Any,
        source: Source = Source.LIVE,
        observed_at: float | None = None,
    ) -> OrderBookSnapshot:
        """Replace the whole book from a raw ``{"asks", "bids"}`` payload."""
        asks, bids = parse_book(raw)
        self._levels.replace(asks, bids)
        self._initialized = True
        snapshot = build_snapshot(asks, bids, source, observed_at)
        self.publish(snapshot)
        return snapshot

    def apply_update(self, raw: Any, observed_at: float | None = None) -> OrderBookSnapshot | None:
        """Apply an incremental update keyed by price. Zero amount removes a level.

        Ignored until a full snapshot has been applied. The resulting snapshot is
        rebuilt from the complete level maps.
        """
        if not self._initialized:
            logger.debug("Ignoring book update received before the first snapshot")
            return self._snapshot
        asks, bids = parse_book(raw)
        if not self._levels.update(asks, bids) and self._snapshot is not None:
            self._changed = frozenset()
            return self._snapshot
        source = self._snapshot.source if self._snapshot else Source.LIVE
        snapshot = build_snapshot(
            self._levels.asks.items(), self._levels.bids.items(), source, observed_at
        )
        self.publish(snapshot)
        return snapshot

    def publish(self, snapshot: OrderBookSnapshot) -> frozenset[float]:
        """Diff ``snapshot`` against the current one, then replace it whole."""
        changed = diff(self._snapshot, snapshot, self._display_depth)
        if self._snapshot is not snapshot:
            self._levels.replace(
                [(level.price, level.amount) for level in snapshot.asks],
                [(level.price, level.amount) for level in snapshot.bids],
            )
            self._initialized = True
        self._snapshot = snapshot
        self._changed = changed
        return changed


class OrderBookBoard(FeedBoard[OrderBookSnapshot]):
    """Published order book; accepted results also flow through the manager's diff."""

    def __init__(self, manager: OrderBookManager) -> None:
        super().__init__()
        self._manager = manager

    @property
    def manager(self) -> OrderBookManager:
        return self._manager

    def apply(self, seq: int, result: Acquired[OrderBookSnapshot]) -> bool:
        accepted = super().apply(seq, result)
        if accepted:
            self._manager.publish(result.value)
        return accepted
