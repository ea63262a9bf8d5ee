"""Periodic refresh driver for one feed."""

from __future__ import annotations

import asyncio
import logging
from typing import Generic, TypeVar

from .cache import FeedBoard
from .controller import FallbackController
from .errors import AllSourcesExhausted
from .interface import LiveEventKind, LiveFeed

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


class UpdateScheduler(Generic[K, V]):
    """Drives a controller at a fixed cadence and publishes results to a board.

    At most one scheduled refresh runs at a time: a tick that fires while one
    is in flight is skipped, not queued. Every issued refresh gets the next
    sequence number; ``refresh_now()`` and ``set_key()`` supersede whatever is
    in flight, whose result is then dropped instead of published.

    When a live feed is attached, the scheduler also owns the one loop that
    drains its channel and forwards each event to the controller.
    """

    def __init__(
        self,
        controller: FallbackController[K, V],
        board: FeedBoard[V],
        key: K,
        interval: float | None = None,
        live_feed: LiveFeed | None = None,
    ) -> None:
        self._controller = controller
        self._board = board
        self._key = key
        self._interval = interval or controller.config.refresh_interval
        self._live_feed = live_feed
        self._issued_seq = 0
        self._inflight: asyncio.Task | None = None
        self._visible = True
        self._running = False
        self._tick_task: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None

    @property
    def key(self) -> K:
        return self._key

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def running(self) -> bool:
        return self._running

    @property
    def issued_seq(self) -> int:
        return self._issued_seq

    @property
    def board(self) -> FeedBoard[V]:
        return self._board

    @property
    def controller(self) -> FallbackController[K, V]:
        return self._controller

    async def start(self, interval: float | None = None) -> None:
        """Begin ticking immediately, then every ``interval`` seconds."""
        if self._running:
            return
        if interval is not None:
            self._interval = interval
        self._running = True
        if self._live_feed is not None:
            await self._live_feed.start()
            self._receive_task = asyncio.create_task(
                self._receive_loop(), name=f"{self._controller.name}-receive"
            )
        self._tick_task = asyncio.create_task(
            self._run_loop(), name=f"{self._controller.name}-scheduler"
        )
        logger.info(
            "Scheduler started for %s feed: %.1fs interval", self._controller.name, self._interval
        )

    async def stop(self) -> None:
        self._running = False
        for task in (self._tick_task, self._receive_task, self._inflight):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        self._receive_task = None
        self._inflight = None
        if self._live_feed is not None:
            await self._live_feed.stop()
        logger.info("Scheduler stopped for %s feed", self._controller.name)

    def tick(self) -> asyncio.Task | None:
        """Issue a regular refresh unless one is already in flight."""
        if self._inflight is not None and not self._inflight.done():
            logger.debug("%s: refresh in flight, skipping tick", self._controller.name)
            return None
        return self._issue(force_fresh=False)

    def refresh_now(self) -> asyncio.Task:
        """Supersede any in-flight refresh and force a fresh acquisition.

        The superseded network call is left to finish; only its result is dropped.
        """
        return self._issue(force_fresh=True)

    def set_key(self, key: K) -> asyncio.Task:
        """Switch context (e.g. timeframe) and refresh for it right away."""
        logger.info("%s: key %s -> %s", self._controller.name, self._key, key)
        self._key = key
        return self.refresh_now()

    def set_visible(self, visible: bool) -> asyncio.Task | None:
        """Pause ticking while hidden; refresh immediately on becoming visible."""
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible:
            logger.info("%s: visible again, refreshing", self._controller.name)
            return self.refresh_now()
        if not visible and was_visible:
            logger.info("%s: hidden, pausing refresh", self._controller.name)
        return None

    # --- Internal ---

    def _issue(self, force_fresh: bool) -> asyncio.Task:
        self._issued_seq += 1
        seq = self._issued_seq
        task = asyncio.create_task(
            self._refresh(seq, self._key, force_fresh),
            name=f"{self._controller.name}-refresh-{seq}",
        )
        self._inflight = task
        return task

    async def _refresh(self, seq: int, key: K, force_fresh: bool) -> bool:
        """Acquire and publish. Returns True if the result was applied."""
        try:
            result = await self._controller.acquire(key, force_fresh=force_fresh)
        except AllSourcesExhausted as e:
            if seq != self._issued_seq:
                return False
            logger.error("%s", e)
            return self._board.apply_error(seq, e)
        except Exception:
            logger.exception("%s: refresh #%d failed", self._controller.name, seq)
            return False

        if seq != self._issued_seq:
            logger.debug("%s: dropping superseded result #%d", self._controller.name, seq)
            return False
        return self._board.apply(seq, result)

    async def _run_loop(self) -> None:
        while self._running:
            if self._visible:
                self.tick()
            await asyncio.sleep(self._interval)

    async def _receive_loop(self) -> None:
        while self._running:
            event = await self._live_feed.receive()
            try:
                if event.kind is LiveEventKind.PAYLOAD:
                    if self._controller.on_live_payload(event.payload, event.at) and self._visible:
                        self.tick()
                elif event.kind is LiveEventKind.CONNECTED:
                    self._controller.on_live_connected()
                elif event.kind is LiveEventKind.DISCONNECTED:
                    self._controller.on_live_disconnected()
            except Exception:
                logger.exception("%s: failed to handle live event", self._controller.name)
