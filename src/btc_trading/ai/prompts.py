"""Prompt text for trade recommendations and EMA event commentary."""

from __future__ import annotations

from btc_trading.ai.policy import PolicyConfig
from btc_trading.ai.schemas import MarketSnapshot
from btc_trading.signals.ema_events import describe_event
from btc_trading.types import EMAEvent, Ticker24h

DECISION_SYSTEM_PROMPT = (
    "You are a Bitcoin futures trader with deep technical-analysis experience. "
    "Always commit to a directional decision, never neutral. "
    "Return only JSON with keys: action, confidence, amount, leverage, reasoning, "
    "timeframeAnalysis, volumeAnalysis, confluenceScore."
)

EVENT_SYSTEM_PROMPT = (
    "You are a Bitcoin technical analyst specialised in exponential moving averages. "
    "Return only JSON with keys: reasoning, recommendation, confidence, keyPoints."
)


def build_decision_prompt(snapshot: MarketSnapshot, policy: PolicyConfig) -> str:
    """Render the market/account snapshot plus the platform rules."""
    lines = [
        "Analyse the market data below and recommend one position.",
        "",
        "MARKET",
        f"- Price: ${snapshot.price:.2f}",
        f"- 24h change: {snapshot.change_pct_24h:.2f}%",
        f"- 24h volume: {snapshot.volume_24h:.0f} BTC",
    ]
    if snapshot.high_24h is not None and snapshot.low_24h is not None:
        lines.append(f"- 24h range: ${snapshot.low_24h:.2f} - ${snapshot.high_24h:.2f}")

    lines += ["", "TIMEFRAMES"]
    for interval, summary in snapshot.timeframes.items():
        lines.append(
            f"- {interval}: close={summary.close:.2f} trend={summary.trend} "
            f"ema10={_fmt(summary.ema10)} ema55={_fmt(summary.ema55)} "
            f"ema200={_fmt(summary.ema200)} ema365={_fmt(summary.ema365)} "
            f"rsi={_fmt(summary.rsi)} macd={_fmt(summary.macd)} "
            f"signal={_fmt(summary.macd_signal)} hist={_fmt(summary.macd_histogram)}"
        )

    lines += [
        "",
        "ACCOUNT",
        f"- Balance: ${snapshot.balance:.2f} (risk tier: {snapshot.risk_tier})",
        f"- Active positions: {snapshot.active_positions}",
    ]
    for position in snapshot.ai_positions:
        lines.append(
            f"- AI {position.side.upper()} {position.amount:.2f} USDT @ "
            f"{position.entry_price:.2f} x{position.leverage:g} pnl={position.pnl:.2f}"
        )

    long_action, short_action = policy.accepted_actions
    lines += [
        "",
        "RULES",
        f"- Minimum amount: ${snapshot.min_amount:.2f} USDT",
        f"- Maximum amount: ${snapshot.max_amount:.2f} USDT",
        f"- action must be \"{long_action}\" or \"{short_action}\", never hold",
        f"- leverage between {policy.min_leverage:g}x and {policy.max_leverage:g}x",
        f"- confidence at least {policy.min_confidence:g}",
        "- weigh confluence between 1h, 4h and 1d; volume must confirm direction",
        "",
        "Respond with JSON only.",
    ]
    return "\n".join(lines)


def build_event_prompt(event: EMAEvent, ticker: Ticker24h | None) -> str:
    ema_label = "55 (medium term)" if event.ema_kind == "ema55" else "200 (long term)"
    lines = [
        "DETECTED EVENT",
        describe_event(event),
        "",
        "MARKET",
        f"- Price: ${event.price:.2f}",
        f"- EMA {ema_label}: ${event.ema_value:.2f}",
    ]
    if ticker is not None:
        lines += [
            f"- 24h change: {ticker.change_pct:.2f}%",
            f"- 24h volume: {ticker.volume:.0f} BTC",
            f"- 24h high: ${ticker.high:.2f}",
            f"- 24h low: ${ticker.low:.2f}",
        ]
    lines += [
        "",
        "Judge whether this is continuation or reversal, recommend LONG, SHORT or "
        "NEUTRAL and give a confidence between 0 and 100.",
    ]
    return "\n".join(lines)


def _fmt(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.2f}"
