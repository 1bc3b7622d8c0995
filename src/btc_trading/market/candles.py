"""Bounded, ordered candle store feeding the indicator engine."""

from __future__ import annotations

import math
from collections import deque
from typing import Any, Iterable, Sequence

from btc_trading.errors import DataQualityError
from btc_trading.features.indicators import compute_indicator_snapshot, summarize_indicators
from btc_trading.types import Candle, IndicatorSnapshot
from btc_trading.utils.logging import get_logger, log_data_quality

DEFAULT_CAPACITY = 500


def validate_candle(candle: Candle) -> None:
    """Raise DataQualityError unless the OHLC envelope is consistent."""
    prices = (candle.open, candle.high, candle.low, candle.close)
    if not all(math.isfinite(p) for p in prices) or not math.isfinite(candle.volume):
        raise DataQualityError("candle_not_finite")
    if any(p <= 0 for p in prices):
        raise DataQualityError("candle_price_not_positive")
    if candle.volume < 0:
        raise DataQualityError("candle_volume_negative")
    if candle.timestamp < 0:
        raise DataQualityError("candle_timestamp_negative")
    body_low = min(candle.open, candle.close)
    body_high = max(candle.open, candle.close)
    if not (candle.low <= body_low and body_high <= candle.high):
        raise DataQualityError("candle_ohlc_envelope_violated")


def validate_price(price: float) -> float:
    """Return ``price`` as float or raise DataQualityError."""
    try:
        value = float(price)
    except (TypeError, ValueError) as exc:
        raise DataQualityError("price_not_numeric") from exc
    if not math.isfinite(value) or value <= 0:
        raise DataQualityError("price_not_positive_finite")
    return value


def candle_from_kline(row: Sequence[Any]) -> Candle:
    """Convert one exchange kline row ``[open_time, o, h, l, c, v, ...]``."""
    if len(row) < 6:
        raise DataQualityError("kline_row_too_short")
    try:
        return Candle(
            timestamp=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
    except (TypeError, ValueError) as exc:
        raise DataQualityError("kline_row_not_numeric") from exc


class CandleStore:
    """Ascending, unique-timestamp candle history with a fixed capacity.

    The last candle may be replaced while its time bucket is still open; older
    candles are append-only and the oldest are dropped once ``capacity`` is hit.
    """

    def __init__(self, interval: str, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity_must_be_positive")
        self.interval = interval
        self._capacity = capacity
        self._candles: deque[Candle] = deque(maxlen=capacity)
        self._logger = get_logger("btc_trading.market.candles")

    def __len__(self) -> int:
        return len(self._candles)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def last(self) -> Candle | None:
        return self._candles[-1] if self._candles else None

    def append(self, candle: Candle) -> bool:
        """Store ``candle``; returns False when it was dropped."""
        try:
            validate_candle(candle)
        except DataQualityError as exc:
            log_data_quality(
                self._logger,
                source=f"candles:{self.interval}",
                reason=str(exc),
                timestamp=candle.timestamp,
            )
            return False

        last = self.last
        if last is not None and candle.timestamp == last.timestamp:
            self._candles[-1] = candle
            return True
        if last is not None and candle.timestamp < last.timestamp:
            log_data_quality(
                self._logger,
                source=f"candles:{self.interval}",
                reason="candle_timestamp_out_of_order",
                timestamp=candle.timestamp,
                last_timestamp=last.timestamp,
            )
            return False
        self._candles.append(candle)
        return True

    def extend(self, candles: Iterable[Candle]) -> int:
        """Append candles in order; returns how many were accepted."""
        return sum(1 for candle in candles if self.append(candle))

    def window(self, n: int) -> list[Candle]:
        """Return the last ``n`` candles, or fewer when history is shorter."""
        if n <= 0:
            return []
        return list(self._candles)[-n:]

    def candles(self) -> list[Candle]:
        return list(self._candles)

    def closes(self) -> list[float]:
        return [candle.close for candle in self._candles]

    def indicators(self) -> IndicatorSnapshot:
        """Recompute the indicator snapshot from the current closes."""
        return compute_indicator_snapshot(self.closes())

    def summary(self) -> dict[str, float | str | None]:
        """Latest indicator values; empty when the store has no candles."""
        if not self._candles:
            return {}
        closes = self.closes()
        return summarize_indicators(closes, compute_indicator_snapshot(closes))


def summarize_timeframes(
    stores: Iterable[CandleStore],
) -> dict[str, dict[str, float | str | None]]:
    """Per-interval summaries for every non-empty store."""
    return {store.interval: store.summary() for store in stores if len(store) > 0}
