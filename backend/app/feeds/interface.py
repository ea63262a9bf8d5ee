"""Abstract interfaces for the tiers of the fallback chain."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PayloadSource(ABC):
    """Contract for pull tiers (REST).

    One call, one raw payload. Implementations raise on any transport or HTTP
    failure; the controller owns timeouts and decides what happens next, so
    sources never retry on their own.
    """

    name: str = "source"

    @abstractmethod
    async def fetch(self) -> Any:
        """Fetch one raw payload. Raises on failure."""

    async def aclose(self) -> None:
        """Release network resources. Safe to call multiple times."""


class SyntheticSource(ABC):
    """Contract for the last-resort tier: always produces a payload, no I/O."""

    @abstractmethod
    def generate(self) -> Any:
        """Return a synthetic raw payload in the same shape as the REST tier."""


class LiveEventKind(str, Enum):
    PAYLOAD = "payload"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class LiveEvent:
    """One item on a live feed's channel."""

    kind: LiveEventKind
    payload: Any = None
    at: float = field(default_factory=time.time)


class LiveFeed(ABC):
    """Contract for push tiers (websocket).

    A live feed owns its connection and reconnects on a fixed backoff after
    every disconnect, independently of whatever the fallback tiers are doing.
    Everything it observes is put on an async channel that exactly one
    consumer drains with ``receive()``.

    Lifecycle:
        feed = CoinbaseTickerFeed(...)
        await feed.start()
        while ...:
            event = await feed.receive()
        await feed.stop()
    """

    name: str = "live"

    @abstractmethod
    async def start(self) -> None:
        """Start the background connection task. Must be called exactly once."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the connection task. Safe to call multiple times."""

    @abstractmethod
    async def receive(self) -> LiveEvent:
        """Wait for the next event on the channel."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether the underlying connection is currently delivering data."""
