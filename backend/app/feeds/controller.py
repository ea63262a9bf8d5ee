"""Fallback chain controller: live push -> REST pull -> cache -> synthetic.

One controller per logical feed. It owns the feed's ``FetchState``, its
payload cache and the single background REST retry task, and it is the only
place where tier timeouts and chain advancement are decided.

State machine (``FeedStatus``)::

    ACQUIRING_LIVE -> LIVE
    LIVE -> DEGRADED                      on disconnect / live timeout
    DEGRADED -> ACQUIRING_REST
    ACQUIRING_REST -> LIVE                live delivered while REST was pending
                   -> REST_OK
                   -> REST_FAILED -> CACHE_FALLBACK
    CACHE_FALLBACK -> fresh entry: serve
                   -> stale entry: serve flagged stale, retry REST in background
                   -> no entry: SYNTHETIC (or AllSourcesExhausted)

The live tier is only consulted while the feed is connected. REST calls, both
in the chain and in the background retry, draw on one ``RequestBudget`` per
source; a denied call falls through to the cache. Failed background retries
back off exponentially from ``rest_retry_backoff`` up to ``MAX_RETRY_BACKOFF``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Generic, TypeVar

from .cache import CacheEntry, PayloadCache
from .config import FeedConfig
from .errors import AllSourcesExhausted, MalformedPayload, TierTimeout
from .interface import PayloadSource, SyntheticSource
from .models import Acquired, FeedStatus, PriceQuote, Source, Tier, Timeframe
from .normalize import current_price, normalize, overlay_price
from .orderbook import OrderBookSnapshot, build_snapshot, parse_book
from .ratelimit import RequestBudget
from .state import FetchState

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

MAX_RETRY_BACKOFF = 300.0  # seconds


class FallbackController(ABC, Generic[K, V]):
    """Acquires one value per call, walking the tiers until one delivers.

    Subclasses decide how a raw payload becomes a value (``decode``) and how
    a raw payload is checked without a key (``validate``).
    """

    def __init__(
        self,
        name: str,
        config: FeedConfig,
        rest_source: PayloadSource | None = None,
        synthetic_source: SyntheticSource | None = None,
        cache: PayloadCache | None = None,
        fetch_state: FetchState | None = None,
    ) -> None:
        self.name = name
        self.config = config
        self._rest = rest_source
        self._synthetic = synthetic_source if config.synthetic_enabled else None
        self.cache = cache or PayloadCache()
        self.fetch_state = fetch_state or FetchState()

        self._status = FeedStatus.ACQUIRING_LIVE
        self._live_connected = False
        self._live_payload: Any = None
        self._live_at: float | None = None
        self._live_arrived = asyncio.Event()
        self._last_rest: CacheEntry | None = None

        self._inflight: dict[K, tuple[float, asyncio.Task]] = {}
        self._retry_task: asyncio.Task | None = None
        self._retry_failures = 0
        self._next_retry_at = 0.0  # time.monotonic()
        self._budget = RequestBudget(config.rest_max_per_minute, config.rest_min_interval)

    # --- Value decoding ---

    @abstractmethod
    def decode(self, payload: Any, key: K, source: Source) -> V:
        """Turn a raw payload into the feed's value. Raises MalformedPayload."""

    @abstractmethod
    def validate(self, payload: Any) -> None:
        """Raise MalformedPayload if ``payload`` could never be decoded."""

    def prepare_live(self, payload: Any) -> Any:
        """Hook to enrich a live payload before it is stored. Default: unchanged."""
        return payload

    # --- Public API ---

    @property
    def status(self) -> FeedStatus:
        return self._status

    @property
    def live_connected(self) -> bool:
        return self._live_connected

    async def acquire(self, key: K, force_fresh: bool = False) -> Acquired[V]:
        """Produce a value for ``key`` from the best tier available.

        Unless ``force_fresh`` is set, a call made within the coalescing
        window of an in-flight acquisition for the same key waits for that
        acquisition instead of starting another one.

        Raises:
            AllSourcesExhausted: REST failed, nothing is cached and synthetic
                data is disabled.
        """
        now = time.monotonic()
        inflight = self._inflight.get(key)
        if inflight is not None and not force_fresh:
            started_at, task = inflight
            if not task.done() and now - started_at <= self.config.coalesce_window:
                logger.debug("%s: coalescing request for %s", self.name, key)
                return await asyncio.shield(task)

        task = asyncio.create_task(self._run_chain(key), name=f"{self.name}-acquire")
        self._inflight[key] = (now, task)
        task.add_done_callback(lambda t, key=key: self._forget(key, t))
        return await asyncio.shield(task)

    def on_live_payload(self, payload: Any, at: float | None = None) -> bool:
        """Accept a payload from the live feed. Returns False if it was rejected."""
        try:
            prepared = self.prepare_live(payload)
            self.validate(prepared)
        except MalformedPayload as e:
            logger.warning("%s: rejected live payload: %s", self.name, e)
            return False
        self._live_payload = prepared
        self._live_at = at or time.time()
        self.cache.store(prepared, Source.LIVE, self._live_at)
        self._live_arrived.set()
        return True

    def on_live_connected(self) -> None:
        """Live tier is delivering again after a full reconnect."""
        self._live_connected = True
        self.fetch_state.reset()
        logger.info("%s: live feed connected", self.name)

    def on_live_disconnected(self) -> None:
        self._live_connected = False
        self.fetch_state.record_failure()
        self._set_status(FeedStatus.DEGRADED)

    def to_dict(self) -> dict:
        entry = self.cache.get()
        return {
            "feed": self.name,
            "status": self._status.value,
            "live_connected": self._live_connected,
            "cache_age": entry.age() if entry else None,
            "retry_pending": self._retry_task is not None and not self._retry_task.done(),
            "retry_in": round(max(0.0, self._next_retry_at - time.monotonic()), 3),
            "rest_budget": self._budget.to_dict() if self._rest is not None else None,
            **self.fetch_state.to_dict(),
        }

    async def aclose(self) -> None:
        tasks = [task for _, task in self._inflight.values()]
        if self._retry_task is not None:
            tasks.append(self._retry_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("%s: task ended with %r during close", self.name, e)
        self._inflight.clear()
        self._retry_task = None
        if self._rest is not None:
            await self._rest.aclose()

    # --- Tier chain ---

    async def _run_chain(self, key: K) -> Acquired[V]:
        started_at = time.time()

        result = await self._from_live(key)
        if result is not None:
            return result

        result = await self._from_rest(key, started_at)
        if result is not None:
            return result

        result = self._from_cache(key)
        if result is not None:
            return result

        if self._synthetic is not None:
            self._set_status(FeedStatus.SYNTHETIC)
            value = self.decode(self._synthetic.generate(), key, Source.SYNTHETIC)
            self.fetch_state.record_success(Tier.SYNTHETIC)
            return Acquired(value=value, source=Source.SYNTHETIC)

        raise AllSourcesExhausted(self.name, "REST failed, cache empty, synthetic data disabled")

    def _fresh_live_payload(self, since: float | None = None) -> Any:
        # Payloads from a closed connection are history, not live data
        if not self._live_connected:
            return None
        if self._live_payload is None or self._live_at is None:
            return None
        if time.time() - self._live_at > self.config.live_max_age:
            return None
        if since is not None and self._live_at < since:
            return None
        return self._live_payload

    async def _from_live(self, key: K) -> Acquired[V] | None:
        payload = self._fresh_live_payload()
        if payload is None and self._live_connected:
            self._set_status(FeedStatus.ACQUIRING_LIVE)
            self._live_arrived.clear()
            try:
                await asyncio.wait_for(self._live_arrived.wait(), self.config.live_timeout)
            except asyncio.TimeoutError:
                e = TierTimeout(Tier.LIVE.value, self.config.live_timeout)
                logger.warning("%s: %s", self.name, e)
                self.fetch_state.record_failure()
                self._set_status(FeedStatus.DEGRADED)
                return None
            payload = self._fresh_live_payload()

        if payload is None:
            if self._status is FeedStatus.LIVE:
                self._set_status(FeedStatus.DEGRADED)
            return None
        return self._live_result(payload, key)

    def _live_result(self, payload: Any, key: K) -> Acquired[V] | None:
        try:
            value = self.decode(payload, key, Source.LIVE)
        except MalformedPayload as e:
            logger.warning("%s: live payload unusable: %s", self.name, e)
            self._set_status(FeedStatus.DEGRADED)
            return None
        self.fetch_state.record_success(Tier.LIVE, self._live_at)
        self._set_status(FeedStatus.LIVE)
        return Acquired(value=value, source=Source.LIVE, acquired_at=self._live_at or time.time())

    async def _fetch_rest(self) -> Any:
        try:
            return await asyncio.wait_for(self._rest.fetch(), self.config.rest_timeout)
        except asyncio.TimeoutError:
            raise TierTimeout(Tier.REST.value, self.config.rest_timeout) from None

    async def _from_rest(self, key: K, started_at: float) -> Acquired[V] | None:
        if self._rest is None:
            return None
        if not self._budget.try_acquire():
            logger.info(
                "%s: REST skipped, request budget spent (next in %.1fs)",
                self.name,
                self._budget.wait_time(),
            )
            return None

        self._set_status(FeedStatus.ACQUIRING_REST)
        value: V | None = None
        try:
            payload = await self._fetch_rest()
            value = self.decode(payload, key, Source.REST_FALLBACK)
        except Exception as e:
            logger.warning("%s: REST tier failed: %s", self.name, e)
            self.fetch_state.record_failure()
        else:
            self._remember_rest(payload)

        # Live may have come back while the request was pending
        live_payload = self._fresh_live_payload(since=started_at)
        if live_payload is not None:
            live = self._live_result(live_payload, key)
            if live is not None:
                return live

        if value is None:
            self._set_status(FeedStatus.REST_FAILED)
            return None
        self.fetch_state.record_success(Tier.REST)
        self._set_status(FeedStatus.REST_OK)
        return Acquired(value=value, source=Source.REST_FALLBACK)

    def _remember_rest(self, payload: Any) -> None:
        self._last_rest = self.cache.store(payload, Source.REST_FALLBACK)
        self._retry_failures = 0
        self._next_retry_at = 0.0

    def _from_cache(self, key: K) -> Acquired[V] | None:
        entry = self.cache.get()
        if entry is None:
            return None

        self._set_status(FeedStatus.CACHE_FALLBACK)
        try:
            value = self.decode(entry.payload, key, Source.CACHE_FALLBACK)
        except MalformedPayload as e:
            logger.warning("%s: cached payload unusable: %s", self.name, e)
            return None

        stale = entry.age() >= self.config.cache_ttl
        if stale:
            logger.info("%s: serving stale cache (%.1fs old)", self.name, entry.age())
            self._schedule_retry()
        self.fetch_state.record_success(Tier.CACHE)
        return Acquired(
            value=value,
            source=Source.CACHE_FALLBACK,
            stale=stale,
            acquired_at=entry.stored_at,
        )

    # --- Background retry ---

    def _schedule_retry(self) -> None:
        """Start a REST retry unless one is running, backing off or over budget."""
        if self._rest is None:
            return
        if self._retry_task is not None and not self._retry_task.done():
            return
        if time.monotonic() < self._next_retry_at or not self._budget.can_request():
            return
        self._retry_task = asyncio.create_task(self._retry_rest(), name=f"{self.name}-rest-retry")

    async def _retry_rest(self) -> None:
        if not self._budget.try_acquire():
            return
        try:
            payload = await self._fetch_rest()
            self.validate(payload)
        except Exception as e:
            self._retry_failures += 1
            delay = min(
                self.config.rest_retry_backoff * 2 ** (self._retry_failures - 1),
                MAX_RETRY_BACKOFF,
            )
            self._next_retry_at = time.monotonic() + delay
            logger.warning(
                "%s: background REST retry failed, next attempt in %.1fs: %s", self.name, delay, e
            )
            self.fetch_state.record_failure()
            return
        self._remember_rest(payload)
        logger.info("%s: background REST retry refreshed the cache", self.name)

    # --- Internal ---

    def _forget(self, key: K, task: asyncio.Task) -> None:
        entry = self._inflight.get(key)
        if entry is not None and entry[1] is task:
            del self._inflight[key]

    def _set_status(self, status: FeedStatus) -> None:
        if status is not self._status:
            logger.info(
                "%s: %s -> %s (failures=%d)",
                self.name,
                self._status.value,
                status.value,
                self.fetch_state.consecutive_failures,
            )
            self._status = status


class PriceFeedController(FallbackController[Timeframe, PriceQuote]):
    """Price quotes keyed by timeframe.

    Live payloads carry little more than the spot price, so they are overlaid
    on the last REST payload to keep every timeframe's change populated.
    """

    def __init__(self, config: FeedConfig, **kwargs: Any) -> None:
        super().__init__("price", config, **kwargs)

    def decode(self, payload: Any, key: Timeframe, source: Source) -> PriceQuote:
        return normalize(payload, key)

    def validate(self, payload: Any) -> None:
        current_price(payload)

    def prepare_live(self, payload: Any) -> Any:
        base = self._last_rest
        if base is None or base.age() >= self.config.cache_ttl:
            self._schedule_retry()
        if base is None:
            return payload
        merged = overlay_price(base.payload, current_price(payload))
        # Live 24h figures are measured against the exchange's own open
        if isinstance(payload, Mapping):
            merged["market_data"].update(
                {name: value for name, value in payload.items() if name.startswith("price_change")}
            )
        return merged


class OrderBookFeedController(FallbackController[int, OrderBookSnapshot]):
    """Order book snapshots. The key is the display depth."""

    def __init__(self, config: FeedConfig, **kwargs: Any) -> None:
        super().__init__("orderbook", config, **kwargs)

    def decode(self, payload: Any, key: int, source: Source) -> OrderBookSnapshot:
        asks, bids = parse_book(payload)
        return build_snapshot(asks, bids, source)

    def validate(self, payload: Any) -> None:
        parse_book(payload)
