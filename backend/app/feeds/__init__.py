"""BTC market-data engine: price quotes and order book depth for the dashboard.

Public API:
    PriceQuote          - Immutable canonical quote for one timeframe
    Timeframe           - 1H / 1D / 1W / 1M / 1Y / ALL
    Acquired            - A value tagged with the tier that produced it
    OrderBookSnapshot   - Immutable sorted book with cumulative depth
    OrderBookManager    - Applies snapshots/updates and diffs changed levels
    FeedConfig          - Timing and tier settings, readable from the environment
    normalize           - Raw provider payload -> PriceQuote
    reconcile           - Dollar/percent change reconciliation
    PriceFeedController - Fallback chain for price quotes
    UpdateScheduler     - Fixed-cadence refresh with sequence-ordered publishing
    create_market_engine - Factory that wires both feeds for the environment
    create_stream_router - FastAPI router factory for the SSE endpoint
    create_market_router - FastAPI router factory for the JSON endpoints
"""

from .config import FeedConfig
from .controller import OrderBookFeedController, PriceFeedController
from .errors import AllSourcesExhausted, FeedError, MalformedPayload, TierTimeout
from .factory import MarketDataEngine, create_market_engine
from .models import Acquired, Direction, PriceQuote, Source, Timeframe
from .normalize import normalize
from .orderbook import OrderBookManager, OrderBookSnapshot
from .reconcile import reconcile
from .scheduler import UpdateScheduler
from .stream import create_market_router, create_stream_router

__all__ = [
    "Acquired",
    "AllSourcesExhausted",
    "Direction",
    "FeedConfig",
    "FeedError",
    "MalformedPayload",
    "MarketDataEngine",
    "OrderBookFeedController",
    "OrderBookManager",
    "OrderBookSnapshot",
    "PriceFeedController",
    "PriceQuote",
    "Source",
    "TierTimeout",
    "Timeframe",
    "UpdateScheduler",
    "create_market_engine",
    "create_market_router",
    "create_stream_router",
    "normalize",
    "reconcile",
]
