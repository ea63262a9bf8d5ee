"""Factory wiring the price and order-book feeds into one engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from .cache import FeedBoard
from .config import FeedConfig
from .controller import OrderBookFeedController, PriceFeedController
from .interface import LiveFeed, PayloadSource
from .models import PriceQuote, Timeframe
from .orderbook import OrderBookBoard, OrderBookManager
from .scheduler import UpdateScheduler
from .simulator import GBMSimulator, SyntheticBookSource, SyntheticPriceSource

logger = logging.getLogger(__name__)


class MarketDataEngine:
    """Both feeds plus the boards the UI reads from.

    Lifecycle:
        engine = create_market_engine()
        await engine.start()
        ...
        await engine.stop()
    """

    def __init__(
        self,
        config: FeedConfig,
        price_scheduler: UpdateScheduler,
        book_scheduler: UpdateScheduler,
    ) -> None:
        self.config = config
        self.price_scheduler = price_scheduler
        self.book_scheduler = book_scheduler

    @property
    def price_board(self) -> FeedBoard[PriceQuote]:
        return self.price_scheduler.board

    @property
    def book_board(self) -> OrderBookBoard:
        return self.book_scheduler.board

    @property
    def timeframe(self) -> Timeframe:
        return self.price_scheduler.key

    async def start(self) -> None:
        await self.price_scheduler.start()
        await self.book_scheduler.start()

    async def stop(self) -> None:
        for scheduler in (self.price_scheduler, self.book_scheduler):
            await scheduler.stop()
            await scheduler.controller.aclose()

    def set_timeframe(self, timeframe: Timeframe | str) -> asyncio.Task:
        """Raises ValueError for an unknown timeframe."""
        return self.price_scheduler.set_key(Timeframe.parse(timeframe))

    def refresh_now(self) -> list[asyncio.Task]:
        return [self.price_scheduler.refresh_now(), self.book_scheduler.refresh_now()]

    def set_visible(self, visible: bool) -> list[asyncio.Task]:
        tasks = [s.set_visible(visible) for s in (self.price_scheduler, self.book_scheduler)]
        return [task for task in tasks if task is not None]

    def status(self) -> dict:
        return {
            "timeframe": self.timeframe.value,
            "visible": self.price_scheduler.visible,
            "offline": self.config.offline,
            "feeds": [
                self.price_scheduler.controller.to_dict(),
                self.book_scheduler.controller.to_dict(),
            ],
        }


def create_market_engine(
    config: FeedConfig | None = None,
    timeframe: Timeframe = Timeframe.D1,
) -> MarketDataEngine:
    """Create the engine for the current environment.

    - BTC_OFFLINE set → synthetic tier only (GBM simulation)
    - Otherwise → Coinbase websocket, CoinGecko / Coinbase REST, cache, synthetic

    Returns an unstarted engine. Caller must await engine.start().
    """
    config = config or FeedConfig.from_env()
    simulator = GBMSimulator()

    price_rest: PayloadSource | None = None
    book_rest: PayloadSource | None = None
    price_live: LiveFeed | None = None
    book_live: LiveFeed | None = None

    if config.offline:
        if not config.synthetic_enabled:
            logger.warning("Offline mode needs synthetic data; enabling it")
            config = replace(config, synthetic_enabled=True)
        logger.info("Market data source: GBM Simulator (offline)")
    else:
        from .live import CoinbaseLevel2Feed, CoinbaseTickerFeed
        from .rest import CoinbaseBookSource, CoinGeckoPriceSource

        price_rest = CoinGeckoPriceSource(api_key=config.coingecko_api_key)
        book_rest = CoinbaseBookSource()
        price_live = CoinbaseTickerFeed(reconnect_backoff=config.reconnect_backoff)
        book_live = CoinbaseLevel2Feed(reconnect_backoff=config.reconnect_backoff)
        logger.info("Market data source: Coinbase live feed with CoinGecko / Coinbase REST")

    price_controller = PriceFeedController(
        config,
        rest_source=price_rest,
        synthetic_source=SyntheticPriceSource(simulator),
    )
    book_controller = OrderBookFeedController(
        config,
        rest_source=book_rest,
        synthetic_source=SyntheticBookSource(simulator),
    )
    manager = OrderBookManager(display_depth=config.display_depth)

    return MarketDataEngine(
        config=config,
        price_scheduler=UpdateScheduler(
            price_controller, FeedBoard(), timeframe, live_feed=price_live
        ),
        book_scheduler=UpdateScheduler(
            book_controller, OrderBookBoard(manager), config.display_depth, live_feed=book_live
        ),
    )
