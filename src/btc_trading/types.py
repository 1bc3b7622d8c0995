"""Shared domain types for the trading engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

PositionSide = Literal["long", "short"]
PositionStatus = Literal["open", "closed", "liquidated"]
EMAKind = Literal["ema55", "ema200"]
EMAEventKind = Literal["touch_from_above", "touch_from_below", "cross_above", "cross_below"]
Recommendation = Literal["LONG", "SHORT", "NEUTRAL"]


@dataclass(slots=True)
class Candle:
    """One OHLCV bar keyed by its open time in epoch milliseconds."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(slots=True)
class Ticker24h:
    """Rolling 24h statistics for the traded symbol."""

    last_price: float
    change_pct: float
    volume: float
    high: float
    low: float


@dataclass(slots=True)
class MACDSeries:
    macd: list[float] = field(default_factory=list)
    signal: list[float] = field(default_factory=list)
    histogram: list[float] = field(default_factory=list)


@dataclass(slots=True)
class IndicatorSnapshot:
    """Indicator series aligned to the tail of the candle series."""

    ema10: list[float] = field(default_factory=list)
    ema55: list[float] = field(default_factory=list)
    ema200: list[float] = field(default_factory=list)
    ema365: list[float] = field(default_factory=list)
    rsi: list[float] = field(default_factory=list)
    macd: MACDSeries = field(default_factory=MACDSeries)


@dataclass(slots=True)
class Position:
    """Leveraged position; amount is the USD notional."""

    id: str
    side: PositionSide
    amount: float
    entry_price: float
    leverage: float
    opened_at: int
    is_ai_managed: bool = False
    ai_reasoning: str | None = None
    confidence: float | None = None
    status: PositionStatus = "open"
    pnl: float = 0.0
    liquidation_price: float = 0.0
    order_id: str | None = None

    @property
    def margin(self) -> float:
        if self.leverage <= 0:
            return 0.0
        return self.amount / self.leverage


@dataclass(slots=True)
class LiquidationOutcome:
    """Reported to the balance owner when a position is force-closed."""

    position_id: str
    price: float
    loss: float
    timestamp: int


@dataclass(slots=True)
class EMAEvent:
    """Touch or cross of the live price against an EMA line."""

    id: str
    ema_kind: EMAKind
    kind: EMAEventKind
    price: float
    ema_value: float
    timestamp: int
    analysis: str | None = None
    recommendation: Recommendation | None = None
    confidence: float | None = None
    error: str | None = None


@dataclass(slots=True)
class TradingMark:
    timestamp: int
    type: Literal["LONG", "SHORT"]
    price: float
    id: str


@dataclass(slots=True)
class OpenPositionInstruction:
    """Caller-applied instruction to open an AI-managed position."""

    side: PositionSide
    amount: float
    leverage: float
    entry_price: float
    ai_reasoning: str
    confidence: float
    is_ai_managed: bool = True


@dataclass(slots=True)
class ClosePositionInstruction:
    position_id: str
    exit_price: float


@dataclass(slots=True)
class Rejection:
    """Expected, non-exceptional refusal of a trading action."""

    code: str
    reason: str


@dataclass(slots=True)
class CycleResult:
    """Outcome of one analysis cycle run."""

    status: str
    decisions: list[dict[str, object]] = field(default_factory=list)
    orders: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
