"""SSE streaming endpoint and JSON endpoints for the market-data engine."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

if TYPE_CHECKING:
    from .factory import MarketDataEngine

logger = logging.getLogger(__name__)


def market_snapshot(engine: MarketDataEngine, depth: int | None = None) -> dict:
    """Everything the dashboard renders, in one JSON-ready dict."""
    price = engine.price_board.read()
    book = engine.book_board.read()
    manager = engine.book_board.manager
    depth = depth or engine.config.display_depth

    return {
        "timeframe": engine.timeframe.value,
        "quote": price.current.to_dict() if price.current else None,
        "quote_error": str(price.error) if price.error else None,
        "orderbook": (
            {
                **book.current.to_dict(),
                "value": book.current.value.to_dict(depth),
                "changed_levels": sorted(manager.changed_levels),
            }
            if book.current
            else None
        ),
        "orderbook_error": str(book.error) if book.error else None,
    }


def create_stream_router(engine: MarketDataEngine) -> APIRouter:
    """Create the SSE streaming router with a reference to the engine.

    This factory pattern lets us inject the engine without globals.
    """
    router = APIRouter(prefix="/api/stream", tags=["streaming"])

    @router.get("/market")
    async def stream_market(request: Request) -> StreamingResponse:
        """SSE endpoint for quote and order book updates.

        An event is sent whenever either board publishes a new version:

            data: {"timeframe": "1D", "quote": {...}, "orderbook": {...}, ...}

        Includes a retry directive so the browser auto-reconnects on
        disconnection (EventSource built-in behavior).
        """
        return StreamingResponse(
            _generate_events(engine, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
            },
        )

    return router


def create_market_router(engine: MarketDataEngine) -> APIRouter:
    """JSON endpoints: current values, status and the scheduler controls."""
    router = APIRouter(prefix="/api/market", tags=["market"])

    @router.get("/quote")
    async def get_quote() -> dict:
        state = engine.price_board.read()
        if state.current is None:
            raise HTTPException(status_code=503, detail=str(state.error or "no quote yet"))
        return {**state.current.to_dict(), "error": str(state.error) if state.error else None}

    @router.get("/orderbook")
    async def get_orderbook(depth: int | None = None) -> dict:
        snapshot = market_snapshot(engine, depth)
        if snapshot["orderbook"] is None:
            raise HTTPException(
                status_code=503, detail=snapshot["orderbook_error"] or "no order book yet"
            )
        return snapshot["orderbook"]

    @router.get("/status")
    async def get_status() -> dict:
        return engine.status()

    @router.post("/refresh")
    async def refresh() -> dict:
        await asyncio.gather(*engine.refresh_now())
        return market_snapshot(engine)

    @router.post("/timeframe/{timeframe}")
    async def set_timeframe(timeframe: str) -> dict:
        try:
            task = engine.set_timeframe(timeframe)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"unknown timeframe: {timeframe}") from None
        await task
        return market_snapshot(engine)

    @router.post("/visibility")
    async def set_visibility(visible: bool) -> dict:
        tasks = engine.set_visible(visible)
        if tasks:
            await asyncio.gather(*tasks)
        return engine.status()

    return router


async def _generate_events(
    engine: MarketDataEngine,
    request: Request,
    interval: float = 0.5,
) -> AsyncGenerator[str, None]:
    """Async generator that yields SSE-formatted market events.

    Polls the boards every `interval` seconds and sends a snapshot when
    either version changed. Stops when the client disconnects (detected via
    request.is_disconnected()).
    """
    # Tell the client to retry after 1 second if the connection drops
    yield "retry: 1000\n\n"

    last_versions = (-1, -1)
    client_ip = request.client.host if request.client else "unknown"
    logger.info("SSE client connected: %s", client_ip)

    try:
        while True:
            if await request.is_disconnected():
                logger.info("SSE client disconnected: %s", client_ip)
                break

            versions = (engine.price_board.version, engine.book_board.version)
            if versions != last_versions:
                last_versions = versions
                snapshot = market_snapshot(engine)
                if snapshot["quote"] or snapshot["orderbook"] or snapshot["quote_error"]:
                    yield f"data: {json.dumps(snapshot)}\n\n"

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("SSE stream cancelled for: %s", client_ip)
