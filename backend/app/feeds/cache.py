"""Thread-safe in-memory stores: the payload cache tier and published boards."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Generic, TypeVar

from .errors import AllSourcesExhausted
from .models import Acquired, Source

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Last good raw payload together with when and where it was obtained."""

    payload: Any
    stored_at: float
    source: Source

    def age(self, now: float | None = None) -> float:
        return (now or time.time()) - self.stored_at


class PayloadCache:
    """Single-entry cache of the last payload a network tier delivered.

    Writers: the fallback controller (after a successful LIVE or REST tier).
    Readers: the CACHE tier of the same controller, diagnostics.
    Entries are replaced whole, never patched.
    """

    def __init__(self) -> None:
        self._entry: CacheEntry | None = None
        self._lock = Lock()
        self._version: int = 0  # Monotonically increasing; bumped on every store

    def store(self, payload: Any, source: Source, timestamp: float | None = None) -> CacheEntry:
        entry = CacheEntry(payload=payload, stored_at=timestamp or time.time(), source=source)
        with self._lock:
            self._entry = entry
            self._version += 1
        return entry

    def get(self) -> CacheEntry | None:
        with self._lock:
            return self._entry

    def is_fresh(self, ttl: float, now: float | None = None) -> bool:
        """True if an entry exists and is younger than ``ttl`` seconds."""
        entry = self.get()
        return entry is not None and entry.age(now) < ttl

    def clear(self) -> None:
        with self._lock:
            self._entry = None

    @property
    def version(self) -> int:
        return self._version

    def __bool__(self) -> bool:
        return self.get() is not None


@dataclass(frozen=True, slots=True)
class BoardState(Generic[T]):
    """Consistent read of a board: value, error and version from the same swap."""

    current: Acquired[T] | None
    error: AllSourcesExhausted | None
    version: int
    applied_seq: int


class FeedBoard(Generic[T]):
    """Latest published result of one feed.

    Single writer (the scheduler), many readers (SSE stream, HTTP handlers).
    Results are applied in the order their acquisitions were initiated: a
    result whose sequence number is not newer than the last applied one is
    discarded.
    """

    def __init__(self) -> None:
        self._state: BoardState[T] = BoardState(current=None, error=None, version=0, applied_seq=0)
        self._lock = Lock()

    def apply(self, seq: int, result: Acquired[T]) -> bool:
        """Publish ``result`` for request ``seq``. Returns False if it was superseded."""
        with self._lock:
            if seq <= self._state.applied_seq:
                return False
            self._state = BoardState(
                current=result,
                error=None,
                version=self._state.version + 1,
                applied_seq=seq,
            )
            return True

    def apply_error(self, seq: int, error: AllSourcesExhausted) -> bool:
        """Publish the "data unavailable" state. The last value is kept for reference."""
        with self._lock:
            if seq <= self._state.applied_seq:
                return False
            self._state = BoardState(
                current=self._state.current,
                error=error,
                version=self._state.version + 1,
                applied_seq=seq,
            )
            return True

    def read(self) -> BoardState[T]:
        with self._lock:
            return self._state

    @property
    def current(self) -> Acquired[T] | None:
        return self.read().current

    @property
    def error(self) -> AllSourcesExhausted | None:
        return self.read().error

    @property
    def version(self) -> int:
        """Current version counter. Useful for SSE change detection."""
        return self.read().version

    @property
    def applied_seq(self) -> int:
        return self.read().applied_seq
