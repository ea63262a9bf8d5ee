"""Pytest configuration and fixtures."""

import pytest

from app.feeds.config import FeedConfig


@pytest.fixture
def event_loop_policy():
    """Use the default event loop policy for all async tests."""
    import asyncio

    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture
def price_payload():
    """CoinGecko-style payload: 1D percent only, 1W both figures, nothing else."""
    return {
        "id": "bitcoin",
        "market_data": {
            "current_price": {"usd": 67230.50},
            "price_change_percentage_24h_in_currency": {"usd": 1.89},
            "price_change_percentage_7d_in_currency": {"usd": -3.2},
            "price_change_7d_in_currency": {"usd": -2222.22},
        },
    }


@pytest.fixture
def book_payload():
    """Raw order book with string values, unsorted."""
    return {
        "asks": [["67001.5", "0.4"], ["67000.5", "0.2"], ["67002.0", "1.0"]],
        "bids": [["66999.0", "0.3"], ["67000.0", "0.5"], ["66998.5", "0.1"]],
    }


@pytest.fixture
def fast_config():
    """Short timeouts so fallback paths resolve quickly in tests."""
    return FeedConfig(
        refresh_interval=1.0,
        live_timeout=0.05,
        rest_timeout=0.2,
        cache_ttl=60.0,
        coalesce_window=1.0,
        reconnect_backoff=0.01,
        live_max_age=10.0,
        rest_retry_backoff=0.05,
        rest_max_per_minute=1000,
        rest_min_interval=0.0,
    )
