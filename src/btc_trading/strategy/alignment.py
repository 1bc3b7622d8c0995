"""Deterministic EMA-alignment rules used for overrides and fallback."""

from __future__ import annotations

from btc_trading.ai.policy import PolicyConfig
from btc_trading.ai.schemas import MarketSnapshot, ModelDecision, TimeframeSummary
from btc_trading.types import PositionSide


def ema_alignment_side(summary: TimeframeSummary | None, price: float | None = None) -> PositionSide:
    """Vote price vs EMA55, EMA10 vs EMA55 and the MACD histogram sign.

    Ties and missing data resolve to long.
    """
    if summary is None:
        return "long"
    reference = price if price is not None else summary.close
    score = 0
    if summary.ema55 is not None:
        score += _sign(reference - summary.ema55)
        if summary.ema10 is not None:
            score += _sign(summary.ema10 - summary.ema55)
    if summary.macd_histogram is not None:
        score += _sign(summary.macd_histogram)
    return "long" if score >= 0 else "short"


def rule_based_decision(snapshot: MarketSnapshot, policy: PolicyConfig) -> ModelDecision:
    """Fallback recommendation for variants that declare a fallback strategy."""
    summary = snapshot.primary
    side = ema_alignment_side(summary, snapshot.price)
    confidence = policy.min_confidence
    reasons = [f"EMA alignment on {snapshot.primary_interval} favours {side}"]

    if summary is not None and summary.rsi is not None:
        if (side == "long" and summary.rsi > 70) or (side == "short" and summary.rsi < 30):
            reasons.append(f"RSI {summary.rsi:.1f} stretched against entry")
        elif summary.trend == ("UP" if side == "long" else "DOWN"):
            confidence = policy.execute_min_confidence
            reasons.append(f"trend {summary.trend} confirms")

    return ModelDecision(
        action=policy.action_for(side),
        confidence=confidence,
        amount=snapshot.min_amount,
        leverage=policy.min_leverage,
        reasoning="Rule-based fallback: " + "; ".join(reasons),
    )


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0
