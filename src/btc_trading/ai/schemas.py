"""AI input/output schemas and strict parsing helpers."""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from btc_trading.errors import InvalidModelResponse


class TimeframeSummary(BaseModel):
    """Latest indicator values for one candle interval."""

    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)

    interval: str
    close: float = Field(gt=0.0)
    ema10: float | None = None
    ema55: float | None = None
    ema200: float | None = None
    ema365: float | None = None
    rsi: float | None = Field(default=None, ge=0.0, le=100.0)
    macd: float | None = None
    macd_signal: float | None = None
    macd_histogram: float | None = None
    trend: Literal["UP", "DOWN", "NEUTRAL"] = "NEUTRAL"


class AIPositionSummary(BaseModel):
    """Open AI-managed position with its live PnL."""

    model_config = ConfigDict(extra="forbid")

    id: str
    side: Literal["long", "short"]
    amount: float
    leverage: float
    entry_price: float
    pnl: float
    liquidation_price: float | None = None


class MarketSnapshot(BaseModel):
    """Read-only market and account projection sent to the model."""

    model_config = ConfigDict(extra="forbid")

    symbol: str = Field(pattern=r"^[A-Z0-9]+$")
    price: float = Field(gt=0.0)
    change_pct_24h: float = 0.0
    volume_24h: float = Field(default=0.0, ge=0.0)
    high_24h: float | None = None
    low_24h: float | None = None
    timeframes: dict[str, TimeframeSummary] = Field(default_factory=dict)
    primary_interval: str = "15m"
    balance: float = Field(ge=0.0)
    active_positions: int = Field(default=0, ge=0)
    ai_positions: list[AIPositionSummary] = Field(default_factory=list)
    min_amount: float = Field(gt=0.0)
    max_amount: float = Field(gt=0.0)
    risk_tier: Literal["low", "medium", "high"] = "medium"

    @property
    def primary(self) -> TimeframeSummary | None:
        return self.timeframes.get(self.primary_interval)


class ModelDecision(BaseModel):
    """Raw trading decision as returned by the model, before policy."""

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False, populate_by_name=True)

    action: str = Field(min_length=1)
    confidence: float
    amount: float
    leverage: float
    reasoning: str
    timeframe_analysis: dict[str, str] | None = Field(
        default=None,
        validation_alias=AliasChoices("timeframeAnalysis", "timeframe_analysis"),
    )
    volume_analysis: str | None = Field(
        default=None,
        validation_alias=AliasChoices("volumeAnalysis", "volume_analysis"),
    )
    confluence_score: float | None = Field(
        default=None,
        validation_alias=AliasChoices("confluenceScore", "confluence_score"),
    )

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("timeframe_analysis", mode="before")
    @classmethod
    def drop_non_text_analysis(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return None

    @classmethod
    def parse_response_text(cls, text: str) -> "ModelDecision":
        """Parse model text; malformed JSON or missing fields raise."""
        try:
            json_obj = _extract_json_obj(text)
        except ValueError as exc:
            raise InvalidModelResponse(str(exc)) from exc
        try:
            return cls.model_validate(json_obj)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise InvalidModelResponse(
                f"schema_validation_error: {field}: {first['msg']}"
            ) from exc


class AIDecision(BaseModel):
    """Decision after platform policy; safe to store and execute."""

    model_config = ConfigDict(extra="forbid")

    action: str
    side: Literal["long", "short"]
    confidence: float = Field(ge=0.0, le=100.0)
    reported_confidence: float
    amount: float = Field(gt=0.0)
    leverage: float = Field(ge=1.0, le=125.0)
    reasoning: str
    overridden: bool = False
    source: Literal["model", "fallback"] = "model"
    timeframe_analysis: dict[str, str] | None = None
    volume_analysis: str | None = None
    confluence_score: float | None = None


class EventAnalysis(BaseModel):
    """Model commentary on one EMA touch/cross event."""

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False, populate_by_name=True)

    reasoning: str
    recommendation: Literal["LONG", "SHORT", "NEUTRAL"]
    confidence: float = Field(ge=0.0, le=100.0)
    key_points: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("keyPoints", "key_points"),
    )

    @field_validator("recommendation", mode="before")
    @classmethod
    def normalize_recommendation(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @classmethod
    def neutral_default(cls, reason: str) -> "EventAnalysis":
        """Conservative analysis used when enrichment fails."""
        return cls(
            reasoning=f"AI analysis unavailable: {reason}",
            recommendation="NEUTRAL",
            confidence=0.0,
        )

    @classmethod
    def parse_response_text(cls, text: str) -> "EventAnalysis":
        try:
            json_obj = _extract_json_obj(text)
            return cls.model_validate(json_obj)
        except ValidationError as exc:
            raise InvalidModelResponse(
                f"schema_validation_error: {exc.errors()[0]['msg']}"
            ) from exc
        except ValueError as exc:
            raise InvalidModelResponse(str(exc)) from exc


def _extract_json_obj(text: str) -> dict[str, Any]:
    """Extract the first JSON object from plain text or fenced content."""
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        decoded = json.loads(stripped)
        if isinstance(decoded, dict):
            return decoded
        raise ValueError("model_response_json_not_object")

    fenced_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, re.DOTALL)
    if fenced_match:
        decoded = json.loads(fenced_match.group(1))
        if isinstance(decoded, dict):
            return decoded
        raise ValueError("model_response_json_not_object")

    brace_match = re.search(r"\{.*\}", stripped, re.DOTALL)
    if brace_match:
        decoded = json.loads(brace_match.group(0))
        if isinstance(decoded, dict):
            return decoded
        raise ValueError("model_response_json_not_object")

    raise ValueError("model_response_not_json")
