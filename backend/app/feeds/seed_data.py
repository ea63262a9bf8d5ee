"""Seed values and parameters for the synthetic tier."""

# Starting BTC price for the simulator (USD)
BASE_PRICE: float = 82151.0

# GBM parameters
# sigma: annualized volatility (higher = more price movement)
# mu: annualized drift / expected return
BTC_PARAMS: dict[str, float] = {"sigma": 0.60, "mu": 0.10}

# BTC trades around the clock
SECONDS_PER_YEAR = 365 * 24 * 3600  # 31,536,000

# Signed percent change reported by synthetic payloads, keyed like the provider fields
SYNTHETIC_CHANGES: dict[str, float] = {
    "1h": 0.3,
    "24h": -0.7,
    "7d": 2.1,
    "30d": 8.5,
    "1y": 25.0,
}

# Random shocks: probability per step and magnitude range (fraction of price)
EVENT_PROBABILITY = 0.001
SHOCK_RANGE: tuple[float, float] = (0.005, 0.02)

# Synthetic order book shape
BOOK_LEVELS = 8
ASK_STEP = 0.75  # USD between consecutive ask levels
BID_STEP = 0.80  # USD between consecutive bid levels
LEVEL_JITTER = 0.5  # extra random offset per level, USD
MIN_LEVEL_AMOUNT = 0.05  # BTC
LEVEL_AMOUNT_RANGE = 0.25  # BTC added on top of the minimum
