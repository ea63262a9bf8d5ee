"""Tests for the fallback chain controllers."""

import asyncio
import time
from dataclasses import replace

import httpx
import pytest

from app.feeds.controller import OrderBookFeedController, PriceFeedController
from app.feeds.errors import AllSourcesExhausted
from app.feeds.interface import PayloadSource
from app.feeds.models import FeedStatus, Source, Tier, Timeframe
from app.feeds.simulator import GBMSimulator, SyntheticBookSource, SyntheticPriceSource


class FakeRest(PayloadSource):
    """REST source returning a fixed payload, optionally slow or failing."""

    name = "fake-rest"

    def __init__(self, payload=None, error=None, delay=0.0):
        self.payload = payload
        self.error = error
        self.delay = delay
        self.calls = 0
        self.closed = False

    async def fetch(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payload

    async def aclose(self):
        self.closed = True


def _failing():
    return FakeRest(error=httpx.ConnectError("connection refused"))


def _price_controller(config, rest=None, synthetic=True):
    return PriceFeedController(
        config,
        rest_source=rest,
        synthetic_source=SyntheticPriceSource(GBMSimulator(seed=1)) if synthetic else None,
    )


@pytest.mark.asyncio
class TestRestAndFallbacks:
    """Tests for the REST, cache and synthetic tiers."""

    async def test_rest_success(self, fast_config, price_payload):
        """Test that a working REST tier is used when live is down."""
        rest = FakeRest(price_payload)
        controller = _price_controller(fast_config, rest)

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.REST_FALLBACK
        assert result.stale is False
        assert result.value.percent_change == 1.89
        assert controller.status == FeedStatus.REST_OK
        assert controller.cache.get().payload == price_payload
        assert controller.fetch_state.current_tier == Tier.REST
        await controller.aclose()
        assert rest.closed

    async def test_rest_failure_uses_fresh_cache(self, fast_config, price_payload):
        """Test that a fresh cache entry is served unflagged."""
        controller = _price_controller(fast_config, _failing())
        controller.cache.store(price_payload, Source.REST_FALLBACK)

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.CACHE_FALLBACK
        assert result.stale is False
        assert controller.status == FeedStatus.CACHE_FALLBACK
        await controller.aclose()

    async def test_live_and_rest_fail_with_stale_cache(self, fast_config, price_payload):
        """Test that an entry older than the TTL is served flagged stale."""
        rest = _failing()
        controller = _price_controller(fast_config, rest)
        controller.cache.store(price_payload, Source.REST_FALLBACK, timestamp=time.time() - 120)
        controller.on_live_connected()
        controller.on_live_disconnected()

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.CACHE_FALLBACK
        assert result.stale is True
        assert result.value.price == 67230.50
        assert controller.to_dict()["retry_pending"] is True
        await asyncio.sleep(0.05)
        assert rest.calls == 2  # chain attempt + background retry
        await controller.aclose()

    async def test_background_retry_refreshes_cache(self, fast_config, price_payload):
        """Test that a successful background retry replaces the stale entry."""
        rest = FakeRest(price_payload, error=httpx.ConnectError("down"), delay=0.01)
        controller = _price_controller(fast_config, rest)
        controller.cache.store(price_payload, Source.REST_FALLBACK, timestamp=time.time() - 120)

        await controller.acquire(Timeframe.D1)
        rest.error = None
        await asyncio.sleep(0.05)

        assert controller.cache.is_fresh(fast_config.cache_ttl)
        await controller.aclose()

    async def test_synthetic_when_nothing_cached(self, fast_config):
        """Test the last-resort synthetic tier."""
        controller = _price_controller(fast_config, _failing())

        result = await controller.acquire(Timeframe.W1)

        assert result.source == Source.SYNTHETIC
        assert result.value.percent_change == 2.1
        assert controller.status == FeedStatus.SYNTHETIC
        assert controller.fetch_state.consecutive_failures == 1
        await controller.aclose()

    async def test_all_sources_exhausted(self, fast_config):
        """Test the only error that crosses the controller boundary."""
        config = replace(fast_config, synthetic_enabled=False)
        controller = PriceFeedController(
            config,
            rest_source=_failing(),
            synthetic_source=SyntheticPriceSource(),
        )

        with pytest.raises(AllSourcesExhausted):
            await controller.acquire(Timeframe.D1)
        await controller.aclose()

    async def test_stale_cache_beats_exhaustion(self, fast_config, price_payload):
        """Test that any cached entry prevents AllSourcesExhausted."""
        config = replace(fast_config, synthetic_enabled=False)
        controller = PriceFeedController(config, rest_source=_failing())
        controller.cache.store(price_payload, Source.REST_FALLBACK, timestamp=time.time() - 3600)

        result = await controller.acquire(Timeframe.D1)

        assert result.stale is True
        await controller.aclose()

    async def test_rest_timeout_advances_chain(self, fast_config, price_payload):
        """Test that a slow REST tier times out and the chain moves on."""
        controller = _price_controller(fast_config, FakeRest(price_payload, delay=1.0))

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.SYNTHETIC
        assert controller.fetch_state.consecutive_failures == 1
        await controller.aclose()

    async def test_malformed_rest_payload_advances_chain(self, fast_config):
        """Test that a REST payload without a price counts as a failure."""
        controller = _price_controller(fast_config, FakeRest({"market_data": {}}))

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.SYNTHETIC
        await controller.aclose()


@pytest.mark.asyncio
class TestCoalescing:
    """Tests for request coalescing."""

    async def test_concurrent_requests_share_one_fetch(self, fast_config, price_payload):
        """Test that a second request attaches to the in-flight one."""
        rest = FakeRest(price_payload, delay=0.05)
        controller = _price_controller(fast_config, rest)

        first, second = await asyncio.gather(
            controller.acquire(Timeframe.D1),
            controller.acquire(Timeframe.D1),
        )

        assert rest.calls == 1
        assert first is second
        await controller.aclose()

    async def test_force_fresh_bypasses_coalescing(self, fast_config, price_payload):
        """Test that a forced request issues its own fetch."""
        rest = FakeRest(price_payload, delay=0.05)
        controller = _price_controller(fast_config, rest)

        await asyncio.gather(
            controller.acquire(Timeframe.D1),
            controller.acquire(Timeframe.D1, force_fresh=True),
        )

        assert rest.calls == 2
        await controller.aclose()

    async def test_different_keys_are_not_coalesced(self, fast_config, price_payload):
        """Test that coalescing is per timeframe."""
        rest = FakeRest(price_payload, delay=0.05)
        controller = _price_controller(fast_config, rest)

        await asyncio.gather(
            controller.acquire(Timeframe.D1),
            controller.acquire(Timeframe.W1),
        )

        assert rest.calls == 2
        await controller.aclose()

    async def test_completed_request_is_not_reused(self, fast_config, price_payload):
        """Test that a finished acquisition does not satisfy later requests."""
        rest = FakeRest(price_payload)
        controller = _price_controller(fast_config, rest)

        await controller.acquire(Timeframe.D1)
        await controller.acquire(Timeframe.D1)

        assert rest.calls == 2
        await controller.aclose()


@pytest.mark.asyncio
class TestLiveTier:
    """Tests for the live tier and recovery."""

    async def test_live_payload_preferred(self, fast_config):
        """Test that a fresh live payload wins over every other tier."""
        rest = FakeRest({"current_price": 1.0})
        controller = _price_controller(fast_config, rest)
        controller.on_live_connected()
        controller.on_live_payload({"current_price": {"usd": 70000.0}})

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.LIVE
        assert result.value.price == 70000.0
        assert controller.status == FeedStatus.LIVE
        await controller.aclose()

    async def test_live_preferred_after_recovery(self, fast_config):
        """Test that fallback is not sticky once live delivers again."""
        controller = _price_controller(fast_config, _failing())
        degraded = await controller.acquire(Timeframe.D1)
        assert degraded.source == Source.SYNTHETIC

        controller.on_live_connected()
        controller.on_live_payload({"current_price": {"usd": 70000.0}})
        recovered = await controller.acquire(Timeframe.D1)

        assert recovered.source == Source.LIVE
        assert controller.fetch_state.current_tier == Tier.LIVE
        await controller.aclose()

    async def test_silent_live_feed_times_out(self, fast_config, price_payload):
        """Test that a connected but silent live feed hits its timeout."""
        controller = _price_controller(fast_config, FakeRest(price_payload))
        controller.on_live_connected()

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.REST_FALLBACK
        assert controller.fetch_state.last_error_at is not None
        await controller.aclose()

    async def test_live_arriving_while_waiting(self, fast_config):
        """Test that a payload arriving within the live timeout is used."""
        config = replace(fast_config, live_timeout=0.5)
        controller = _price_controller(config, _failing())
        controller.on_live_connected()

        task = asyncio.create_task(controller.acquire(Timeframe.D1))
        await asyncio.sleep(0.02)
        controller.on_live_payload({"current_price": {"usd": 70000.0}})
        result = await task

        assert result.source == Source.LIVE
        await controller.aclose()

    async def test_live_recovers_during_rest(self, fast_config, price_payload):
        """Test ACQUIRING_REST -> LIVE when live delivers while REST is pending."""
        controller = _price_controller(fast_config, FakeRest(price_payload, delay=0.1))

        task = asyncio.create_task(controller.acquire(Timeframe.D1))
        await asyncio.sleep(0.02)
        assert controller.status == FeedStatus.ACQUIRING_REST
        controller.on_live_connected()
        controller.on_live_payload({"current_price": {"usd": 70000.0}})
        result = await task

        assert result.source == Source.LIVE
        assert controller.status == FeedStatus.LIVE
        await controller.aclose()

    async def test_old_live_payload_is_ignored(self, fast_config, price_payload):
        """Test that live data older than live_max_age is not served as live."""
        controller = _price_controller(fast_config, FakeRest(price_payload))
        controller.on_live_payload({"current_price": {"usd": 70000.0}}, at=time.time() - 60)

        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.REST_FALLBACK
        await controller.aclose()

    async def test_disconnect_degrades(self, fast_config):
        """Test LIVE -> DEGRADED on disconnect."""
        controller = _price_controller(fast_config)
        controller.on_live_connected()
        controller.on_live_payload({"current_price": {"usd": 70000.0}})
        await controller.acquire(Timeframe.D1)

        controller.on_live_disconnected()

        assert controller.status == FeedStatus.DEGRADED
        assert controller.live_connected is False

    async def test_malformed_live_payload_rejected(self, fast_config):
        """Test that a live payload without a price is dropped."""
        controller = _price_controller(fast_config)
        assert controller.on_live_payload({"price": "oops"}) is False
        assert controller.cache.get() is None

    async def test_live_price_overlaid_on_rest_history(self, fast_config):
        """Test that live prices keep the historical change of every timeframe."""
        base = {
            "market_data": {
                "current_price": {"usd": 60000.0},
                "price_change_percentage_7d_in_currency": {"usd": 20.0},
            }
        }
        controller = _price_controller(fast_config, FakeRest(base))
        await controller.acquire(Timeframe.W1)

        controller.on_live_connected()
        controller.on_live_payload({"current_price": {"usd": 70000.0}})
        result = await controller.acquire(Timeframe.W1)

        assert result.source == Source.LIVE
        assert result.value.price == 70000.0
        assert result.value.percent_change == pytest.approx(40.0)
        assert result.value.absolute_change == pytest.approx(20000.0)
        await controller.aclose()


@pytest.mark.asyncio
class TestOrderBookFeedController:
    """Tests for the order book controller."""

    async def test_rest_book(self, fast_config, book_payload):
        """Test a REST book decoded into a tagged snapshot."""
        controller = OrderBookFeedController(fast_config, rest_source=FakeRest(book_payload))

        result = await controller.acquire(fast_config.display_depth)

        assert result.source == Source.REST_FALLBACK
        assert result.value.source == Source.REST_FALLBACK
        assert result.value.best_ask == 67000.5
        await controller.aclose()

    async def test_synthetic_book(self, fast_config):
        """Test synthetic books when REST is down."""
        controller = OrderBookFeedController(
            fast_config,
            rest_source=_failing(),
            synthetic_source=SyntheticBookSource(GBMSimulator(seed=4)),
        )

        result = await controller.acquire(fast_config.display_depth)

        assert result.source == Source.SYNTHETIC
        assert len(result.value.asks) == 8
        await controller.aclose()

    async def test_live_book(self, fast_config, book_payload):
        """Test that live books are used when fresh."""
        controller = OrderBookFeedController(fast_config)
        controller.on_live_connected()
        assert controller.on_live_payload(book_payload)

        result = await controller.acquire(fast_config.display_depth)

        assert result.source == Source.LIVE
        assert result.value.spread == 0.5


LIVE_TICK = {"current_price": {"usd": 70000.0}}


@pytest.mark.asyncio
class TestLiveDisconnect:
    """Tests for the chain after the live feed drops."""

    async def test_disconnect_falls_through_to_rest(self, fast_config):
        """Test that the last socket payload is not served as live once disconnected."""
        rest = FakeRest({"current_price": {"usd": 65000.0}})
        controller = _price_controller(fast_config, rest)
        controller.on_live_connected()
        controller.on_live_payload(LIVE_TICK)
        controller.on_live_disconnected()

        result = await controller.acquire(Timeframe.D1, force_fresh=True)

        assert result.source == Source.REST_FALLBACK
        assert result.value.price == 65000.0
        assert controller.status == FeedStatus.REST_OK
        await controller.aclose()

    async def test_reconnect_restores_live(self, fast_config):
        """Test that live is served again after a reconnect delivers."""
        controller = _price_controller(fast_config, FakeRest({"current_price": {"usd": 65000.0}}))
        controller.on_live_connected()
        controller.on_live_payload(LIVE_TICK)
        controller.on_live_disconnected()
        await controller.acquire(Timeframe.D1)

        controller.on_live_connected()
        controller.on_live_payload({"current_price": {"usd": 71000.0}})
        result = await controller.acquire(Timeframe.D1)

        assert result.source == Source.LIVE
        assert result.value.price == 71000.0
        await controller.aclose()


@pytest.mark.asyncio
class TestBackgroundRetry:
    """Tests for the background REST retry backoff."""

    async def test_failed_retry_backs_off(self, fast_config):
        """Test that a burst of live ticks does not turn into a burst of REST calls."""
        config = replace(fast_config, rest_retry_backoff=1.0)
        rest = _failing()
        controller = _price_controller(config, rest)
        controller.on_live_connected()

        for _ in range(50):
            controller.on_live_payload(LIVE_TICK)
            await asyncio.sleep(0.01)

        assert rest.calls == 1
        assert controller.to_dict()["retry_in"] > 0
        await controller.aclose()

    async def test_retry_resumes_with_doubled_delay(self, fast_config):
        """Test that the retry fires again after the backoff and the delay doubles."""
        rest = _failing()
        controller = _price_controller(fast_config, rest)
        controller.on_live_connected()

        controller.on_live_payload(LIVE_TICK)
        await asyncio.sleep(0.01)
        controller.on_live_payload(LIVE_TICK)
        await asyncio.sleep(0.01)
        assert rest.calls == 1

        await asyncio.sleep(0.06)
        controller.on_live_payload(LIVE_TICK)
        await asyncio.sleep(0.01)

        assert rest.calls == 2
        assert controller.to_dict()["retry_in"] > 0.05
        await controller.aclose()

    async def test_success_clears_backoff(self, fast_config, price_payload):
        """Test that a successful retry resets the backoff."""
        rest = _failing()
        controller = _price_controller(fast_config, rest)
        controller.on_live_connected()
        controller.on_live_payload(LIVE_TICK)
        await asyncio.sleep(0.01)

        rest.error = None
        rest.payload = price_payload
        await asyncio.sleep(0.06)
        controller.on_live_payload(LIVE_TICK)
        await asyncio.sleep(0.01)

        assert rest.calls == 2
        assert controller.to_dict()["retry_in"] == 0.0
        assert controller.cache.get().payload == price_payload
        await controller.aclose()


@pytest.mark.asyncio
class TestRequestBudget:
    """Tests for the per-source REST request budget."""

    async def test_spent_budget_serves_cache(self, fast_config, price_payload):
        """Test that a request inside the minimum interval is answered from cache."""
        config = replace(fast_config, rest_min_interval=3.0, rest_max_per_minute=25)
        rest = FakeRest(price_payload)
        controller = _price_controller(config, rest)

        first = await controller.acquire(Timeframe.D1)
        second = await controller.acquire(Timeframe.W1, force_fresh=True)

        assert first.source == Source.REST_FALLBACK
        assert second.source == Source.CACHE_FALLBACK
        assert second.value.percent_change == -3.2
        assert rest.calls == 1
        budget = controller.to_dict()["rest_budget"]
        assert budget["requests_in_last_minute"] == 1
        assert budget["remaining_requests"] == 24
        assert budget["can_request"] is False
        await controller.aclose()

    async def test_spent_budget_blocks_background_retry(self, fast_config, price_payload):
        """Test that a stale cache does not schedule a retry the budget cannot pay for."""
        config = replace(fast_config, rest_min_interval=3.0)
        rest = _failing()
        controller = _price_controller(config, rest)
        controller.cache.store(price_payload, Source.REST_FALLBACK, timestamp=time.time() - 120)

        result = await controller.acquire(Timeframe.D1)

        assert result.stale is True
        assert controller.to_dict()["retry_pending"] is False
        assert rest.calls == 1
        await controller.aclose()

    async def test_no_budget_without_rest(self, fast_config):
        """Test that a synthetic-only controller reports no budget."""
        controller = _price_controller(fast_config)
        assert controller.to_dict()["rest_budget"] is None
