"""FastAPI application serving the BTC dashboard's market data."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.feeds import FeedConfig, create_market_engine, create_market_router, create_stream_router

logger = logging.getLogger(__name__)


def create_app(config: FeedConfig | None = None) -> FastAPI:
    """Build the app. The engine starts and stops with the app's lifespan."""
    engine = create_market_engine(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await engine.start()
        logger.info("Market data engine started")
        try:
            yield
        finally:
            await engine.stop()
            logger.info("Market data engine stopped")

    app = FastAPI(title="BTC Dashboard", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(create_stream_router(engine))
    app.include_router(create_market_router(engine))
    return app


logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

app = create_app()


def main() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
