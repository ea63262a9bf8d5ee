"""Exception types for the market-data feeds."""

from __future__ import annotations


class FeedError(Exception):
    """Base class for every error raised by the feed engine."""


class MalformedPayload(FeedError, ValueError):
    """A source payload is missing the mandatory current USD price.

    Raised by the normalizer and the order-book parser. The fallback chain
    treats it as a tier failure and moves on; it never reaches the UI.
    """


class TierTimeout(FeedError):
    """A single tier did not answer within its allotted time."""

    def __init__(self, tier: str, timeout: float) -> None:
        super().__init__(f"{tier} tier timed out after {timeout:.2f}s")
        self.tier = tier
        self.timeout = timeout


class AllSourcesExhausted(FeedError):
    """No tier could produce data: REST failed, nothing cached, synthetic off.

    This is the only error that crosses the controller boundary. The UI renders
    it as a "data unavailable" state.
    """

    def __init__(self, feed: str, reason: str = "") -> None:
        message = f"all sources exhausted for {feed} feed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.feed = feed
        self.reason = reason
