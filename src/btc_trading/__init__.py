"""BTC trading engine: indicators, EMA events, position risk and AI decisions."""

__version__ = "0.1.0"
