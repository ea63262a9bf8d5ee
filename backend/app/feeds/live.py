"""Live push tier: Coinbase Exchange websocket feed.

Each feed keeps one websocket open, translates exchange messages into the
canonical payload shapes and puts them on a bounded ``asyncio.Queue``. When
the queue is full the oldest event is dropped; only the newest state matters.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from abc import abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .errors import MalformedPayload
from .interface import LiveEvent, LiveEventKind, LiveFeed
from .orderbook import LevelPairs, OrderBookManager, OrderBookSnapshot, parse_levels

logger = logging.getLogger(__name__)

COINBASE_WS_URL = "wss://ws-feed.exchange.coinbase.com"
PRODUCT_ID = "BTC-USD"
QUEUE_SIZE = 100
BOOK_PAYLOAD_LEVELS = 50


def _positive(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None


def ticker_payload(message: Mapping[str, Any]) -> dict[str, Any] | None:
    """Translate a ``ticker`` message into a price payload, or None to ignore it.

    The ticker carries the spot price and the 24h open, which is enough for
    the 1D change. Other timeframes come from overlaying the price on the last
    REST payload.
    """
    if message.get("type") != "ticker":
        return None
    price = _positive(message.get("price"))
    if price is None:
        return None

    payload: dict[str, Any] = {"current_price": {"usd": price}}
    open_24h = _positive(message.get("open_24h"))
    if open_24h is not None:
        payload["price_change_24h_in_currency"] = {"usd": price - open_24h}
        payload["price_change_percentage_24h_in_currency"] = {
            "usd": (price - open_24h) / open_24h * 100
        }
    return payload


def l2_changes(message: Mapping[str, Any]) -> tuple[LevelPairs, LevelPairs]:
    """Split an ``l2update`` message's ``changes`` into (asks, bids) deltas."""
    asks: list[Any] = []
    bids: list[Any] = []
    for change in message.get("changes") or ():
        if not isinstance(change, (list, tuple)) or len(change) < 3:
            logger.warning("Skipping malformed l2update change %r", change)
            continue
        side, price, size = change[0], change[1], change[2]
        if side == "sell":
            asks.append((price, size))
        elif side == "buy":
            bids.append((price, size))
    return parse_levels(asks, "ask"), parse_levels(bids, "bid")


class ChannelLiveFeed(LiveFeed):
    """Websocket connection loop with fixed-backoff reconnect.

    Subclasses provide the subscription message and ``translate()``. A
    CONNECTED event is emitted with the first payload of every connection and
    DISCONNECTED when a delivering connection ends.
    """

    def __init__(
        self,
        product_id: str = PRODUCT_ID,
        reconnect_backoff: float = 1.0,
        url: str = COINBASE_WS_URL,
        queue_size: int = QUEUE_SIZE,
        connector: Callable[[str], Any] | None = None,
    ) -> None:
        self._product_id = product_id
        self._backoff = reconnect_backoff
        self._url = url
        self._connect = connector or websockets.connect
        self._queue: asyncio.Queue[LiveEvent] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None
        self._running = False
        self._connected = False
        self._dropped = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def dropped(self) -> int:
        """Events discarded because the consumer fell behind."""
        return self._dropped

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-feed")
        logger.info("Live feed %s started: %s %s", self.name, self._url, self._product_id)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._connected = False
        logger.info("Live feed %s stopped", self.name)

    async def receive(self) -> LiveEvent:
        return await self._queue.get()

    @abstractmethod
    def subscription(self) -> dict[str, Any]:
        """Subscribe message sent right after connecting."""

    @abstractmethod
    def translate(self, message: Mapping[str, Any]) -> Any:
        """Exchange message -> canonical payload, or None when there is nothing to emit."""

    def on_open(self) -> None:
        """Called after every (re)connect, before the first message."""

    # --- Internal ---

    def _emit(self, event: LiveEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
        self._queue.put_nowait(event)

    def _mark_disconnected(self) -> None:
        if self._connected:
            self._connected = False
            self._emit(LiveEvent(LiveEventKind.DISCONNECTED))
            logger.warning("Live feed %s disconnected", self.name)

    async def _run(self) -> None:
        while self._running:
            try:
                async with self._connect(self._url) as ws:
                    await ws.send(json.dumps(self.subscription()))
                    self.on_open()
                    logger.info("Live feed %s connected", self.name)
                    async for message in ws:
                        self._handle_message(message)
            except ConnectionClosed as e:
                logger.warning("Live feed %s closed: %s", self.name, e)
            except Exception:
                logger.exception("Live feed %s error", self.name)

            self._mark_disconnected()
            if self._running:
                await asyncio.sleep(self._backoff)

    def _handle_message(self, message: str | bytes) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.warning("Live feed %s sent invalid JSON: %s", self.name, e)
            return
        if not isinstance(data, Mapping):
            return
        if data.get("type") == "error":
            logger.warning("Live feed %s error message: %s", self.name, data.get("message"))
            return

        payload = self.translate(data)
        if payload is None:
            return
        if not self._connected:
            self._connected = True
            self._emit(LiveEvent(LiveEventKind.CONNECTED))
        self._emit(LiveEvent(LiveEventKind.PAYLOAD, payload))


class CoinbaseTickerFeed(ChannelLiveFeed):
    """``ticker`` channel: one price payload per trade."""

    name = "coinbase-ticker"

    def subscription(self) -> dict[str, Any]:
        return {"type": "subscribe", "product_ids": [self._product_id], "channels": ["ticker"]}

    def translate(self, message: Mapping[str, Any]) -> dict[str, Any] | None:
        return ticker_payload(message)


class CoinbaseLevel2Feed(ChannelLiveFeed):
    """``level2_batch`` channel assembled into full book payloads.

    The exchange sends one snapshot per connection followed by batched
    deltas. Both go through an ``OrderBookManager``; every message that
    changes the book emits the top ``levels`` of each side.
    """

    name = "coinbase-level2"

    def __init__(self, *args: Any, levels: int = BOOK_PAYLOAD_LEVELS, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._levels = levels
        self._book = OrderBookManager(display_depth=levels)

    def subscription(self) -> dict[str, Any]:
        return {
            "type": "subscribe",
            "product_ids": [self._product_id],
            "channels": ["level2_batch"],
        }

    def on_open(self) -> None:
        self._book = OrderBookManager(display_depth=self._levels)

    def translate(self, message: Mapping[str, Any]) -> dict[str, Any] | None:
        kind = message.get("type")
        if kind == "snapshot":
            try:
                snapshot = self._book.apply_snapshot(message)
            except MalformedPayload as e:
                logger.warning("Level2 snapshot unusable: %s", e)
                return None
            logger.debug("Level2 snapshot: %d levels", len(snapshot.asks) + len(snapshot.bids))
            return self._payload(snapshot)
        if kind == "l2update":
            previous = self._book.snapshot
            asks, bids = l2_changes(message)
            snapshot = self._book.apply_update({"asks": asks, "bids": bids})
            if snapshot is not None and snapshot is not previous:
                return self._payload(snapshot)
        return None

    def _payload(self, snapshot: OrderBookSnapshot) -> dict[str, list[list[float]]]:
        return {
            "asks": [[level.price, level.amount] for level in snapshot.asks[: self._levels]],
            "bids": [[level.price, level.amount] for level in snapshot.bids[: self._levels]],
        }
