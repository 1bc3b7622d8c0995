"""Binance market data client: klines, 24h ticker and last price."""

from __future__ import annotations

from typing import Any

from binance.client import Client  # type: ignore[import-untyped]

from btc_trading.config import Settings
from btc_trading.errors import DataQualityError
from btc_trading.market.candles import candle_from_kline, validate_price
from btc_trading.types import Candle, Ticker24h
from btc_trading.utils.logging import get_logger, log_data_quality


class BinanceDataClient:
    """Read-only public market data."""

    _INTERVAL_MAP = {
        "1m": Client.KLINE_INTERVAL_1MINUTE,
        "5m": Client.KLINE_INTERVAL_5MINUTE,
        "15m": Client.KLINE_INTERVAL_15MINUTE,
        "1h": Client.KLINE_INTERVAL_1HOUR,
        "4h": Client.KLINE_INTERVAL_4HOUR,
        "1d": Client.KLINE_INTERVAL_1DAY,
    }

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger("btc_trading.data.binance")
        self._client = Client()

    def fetch_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        """Fetch spot klines; malformed rows are dropped and logged."""
        resolved_interval = self._INTERVAL_MAP.get(interval.lower())
        if resolved_interval is None:
            raise ValueError(f"unsupported_interval: {interval}")

        rows = self._client.get_klines(symbol=symbol, interval=resolved_interval, limit=limit)
        if not rows:
            raise RuntimeError("empty_kline_response")

        candles: list[Candle] = []
        for row in rows:
            try:
                candles.append(candle_from_kline(row))
            except DataQualityError as exc:
                log_data_quality(
                    self._logger,
                    source=f"binance:{interval}",
                    reason=str(exc),
                )
        return candles

    def fetch_ticker_24h(self, symbol: str) -> Ticker24h:
        payload: dict[str, Any] = self._client.get_ticker(symbol=symbol)
        return Ticker24h(
            last_price=validate_price(payload.get("lastPrice")),
            change_pct=float(payload.get("priceChangePercent", 0.0)),
            volume=float(payload.get("volume", 0.0)),
            high=float(payload.get("highPrice", 0.0)),
            low=float(payload.get("lowPrice", 0.0)),
        )

    def fetch_price(self, symbol: str) -> float:
        """Latest trade price; raises DataQualityError for unusable values."""
        payload: dict[str, Any] = self._client.get_symbol_ticker(symbol=symbol)
        return validate_price(payload.get("price"))
