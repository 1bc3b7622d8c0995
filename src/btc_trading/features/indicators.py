"""Indicator computation: EMA, RSI and MACD over closing prices."""

from __future__ import annotations

from typing import Literal, Sequence

import numpy as np
import pandas as pd  # type: ignore[import-untyped]
from numpy.lib.stride_tricks import sliding_window_view

from btc_trading.types import IndicatorSnapshot, MACDSeries

RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9


def ema(prices: Sequence[float], period: int) -> list[float]:
    """Exponential moving average seeded with the first raw price.

    ``ema[0] == prices[0]`` and every later point uses the multiplier
    ``2 / (period + 1)``; no SMA warm-up window is used.
    """
    if period < 1:
        raise ValueError("ema_period_must_be_positive")
    if len(prices) == 0:
        return []
    series = _as_series(prices)
    return [float(v) for v in series.ewm(span=period, adjust=False).mean()]


def rsi(prices: Sequence[float], period: int = RSI_PERIOD) -> list[float]:
    """RSI from a simple trailing average of gains and losses.

    Each point averages the last ``period`` price changes from scratch (no Wilder
    smoothing). Output has ``len(prices) - period`` points; a window without
    losses yields 100.
    """
    if period < 1:
        raise ValueError("rsi_period_must_be_positive")
    values = _as_array(prices)
    if len(values) <= period:
        return []

    changes = np.diff(values)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)
    avg_gain = sliding_window_view(gains, period).sum(axis=1) / period
    avg_loss = sliding_window_view(losses, period).sum(axis=1) / period

    out: list[float] = []
    for gain, loss in zip(avg_gain, avg_loss):
        if loss == 0:
            out.append(100.0)
            continue
        rs = gain / loss
        out.append(float(100.0 - 100.0 / (1.0 + rs)))
    return out


def macd(prices: Sequence[float]) -> MACDSeries:
    """MACD line (EMA12 - EMA26), its EMA9 signal and the histogram."""
    fast = ema(prices, MACD_FAST)
    slow = ema(prices, MACD_SLOW)
    size = min(len(fast), len(slow))
    macd_line = [fast[i] - slow[i] for i in range(size)]
    signal = ema(macd_line, MACD_SIGNAL)
    size = min(len(macd_line), len(signal))
    return MACDSeries(
        macd=macd_line[:size],
        signal=signal[:size],
        histogram=[macd_line[i] - signal[i] for i in range(size)],
    )


def compute_indicator_snapshot(closes: Sequence[float]) -> IndicatorSnapshot:
    """Compute every chart indicator from one closing-price series."""
    return IndicatorSnapshot(
        ema10=ema(closes, 10),
        ema55=ema(closes, 55),
        ema200=ema(closes, 200),
        ema365=ema(closes, 365),
        rsi=rsi(closes, RSI_PERIOD),
        macd=macd(closes),
    )


def classify_trend(snapshot: IndicatorSnapshot) -> Literal["UP", "DOWN", "NEUTRAL"]:
    """Classify trend using EMA10/EMA55/EMA200 stacking and EMA55 slope."""
    if len(snapshot.ema55) < 2 or not snapshot.ema10 or not snapshot.ema200:
        return "NEUTRAL"

    ema10_last = snapshot.ema10[-1]
    ema55_last = snapshot.ema55[-1]
    ema55_prev = snapshot.ema55[-2]
    ema200_last = snapshot.ema200[-1]

    if ema10_last > ema55_last > ema200_last and ema55_last > ema55_prev:
        return "UP"
    if ema10_last < ema55_last < ema200_last and ema55_last < ema55_prev:
        return "DOWN"
    return "NEUTRAL"


def summarize_indicators(
    closes: Sequence[float],
    snapshot: IndicatorSnapshot | None = None,
) -> dict[str, float | str | None]:
    """Reduce an indicator snapshot to its latest values for one timeframe."""
    if len(closes) == 0:
        raise ValueError("input_closes_empty")
    if snapshot is None:
        snapshot = compute_indicator_snapshot(closes)

    return {
        "close": float(closes[-1]),
        "ema10": _last(snapshot.ema10),
        "ema55": _last(snapshot.ema55),
        "ema200": _last(snapshot.ema200),
        "ema365": _last(snapshot.ema365),
        "rsi": _last(snapshot.rsi),
        "macd": _last(snapshot.macd.macd),
        "macd_signal": _last(snapshot.macd.signal),
        "macd_histogram": _last(snapshot.macd.histogram),
        "trend": classify_trend(snapshot),
    }


def _last(values: list[float]) -> float | None:
    return values[-1] if values else None


def _as_array(prices: Sequence[float]) -> np.ndarray:
    values = np.asarray(prices, dtype=float)
    if values.size and not np.all(np.isfinite(values)):
        raise ValueError("prices_not_finite")
    return values


def _as_series(prices: Sequence[float]) -> pd.Series:
    return pd.Series(_as_array(prices))
