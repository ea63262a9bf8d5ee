"""REST pull tier: CoinGecko for prices, Coinbase Exchange for the order book."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .interface import PayloadSource

logger = logging.getLogger(__name__)

COINGECKO_BASE_URL = "https://api.coingecko.com/api/v3"
COINBASE_BASE_URL = "https://api.exchange.coinbase.com"
PRODUCT_ID = "BTC-USD"


class HttpPayloadSource(PayloadSource):
    """Shared plumbing for sources backed by one ``httpx.AsyncClient``.

    A client passed in by the caller is borrowed and never closed here;
    otherwise one is created on first use and closed by ``aclose()``.
    No timeout is set on the client: the fallback controller bounds every
    call with its own per-tier timeout.
    """

    base_url: str = ""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=None)
        return self._client

    async def _get_json(
        self, path: str, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None
    ) -> Any:
        resp = await self._get_client().get(path, params=params, headers=headers)
        resp.raise_for_status()
        return resp.json()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class CoinGeckoPriceSource(HttpPayloadSource):
    """``GET /coins/bitcoin`` with market data only.

    The response already follows the normalizer's naming scheme, so the raw
    JSON is returned untouched.
    """

    name = "coingecko"
    base_url = COINGECKO_BASE_URL

    def __init__(
        self,
        api_key: str = "",
        coin_id: str = "bitcoin",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client)
        self._api_key = api_key
        self._coin_id = coin_id

    async def fetch(self) -> Any:
        params = {
            "localization": "false",
            "tickers": "false",
            "market_data": "true",
            "community_data": "false",
            "developer_data": "false",
        }
        headers = {"x-cg-demo-api-key": self._api_key} if self._api_key else None
        payload = await self._get_json(f"/coins/{self._coin_id}", params=params, headers=headers)
        logger.debug("CoinGecko payload received for %s", self._coin_id)
        return payload


class CoinbaseBookSource(HttpPayloadSource):
    """``GET /products/BTC-USD/book?level=2``: aggregated top-50 levels per side."""

    name = "coinbase-book"
    base_url = COINBASE_BASE_URL

    def __init__(
        self,
        product_id: str = PRODUCT_ID,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client)
        self._product_id = product_id

    async def fetch(self) -> Any:
        data = await self._get_json(f"/products/{self._product_id}/book", params={"level": 2})
        # Entries are [price, size, num_orders] as strings; the book parser
        # only reads the first two.
        return {"asks": data.get("asks", []), "bids": data.get("bids", [])}
