"""Platform policy applied to every AI decision, per product variant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from btc_trading.config import PolicyVariant
from btc_trading.types import PositionSide

RiskTier = Literal["low", "medium", "high"]

NEUTRAL_ACTIONS = frozenset({"hold", "neutral", "wait", "none", "flat"})
_LONG_SYNONYMS = frozenset({"long", "buy"})
_SHORT_SYNONYMS = frozenset({"short", "sell"})

ABSOLUTE_MAX_LEVERAGE = 125.0


@dataclass(slots=True, frozen=True)
class PolicyConfig:
    """One configurable policy instead of per-panel code paths."""

    name: str
    long_action: str
    short_action: str
    min_confidence: float
    execute_min_confidence: float
    min_leverage: float
    max_leverage: float
    cooldown_ms: int = 300_000
    single_position_only: bool = False
    allow_loss_close: bool = False
    scale_to_balance: bool = False
    scale_fraction: float = 0.9
    min_order_amount: float = 0.0
    has_fallback: bool = False

    @property
    def accepted_actions(self) -> tuple[str, str]:
        return (self.long_action, self.short_action)

    def action_for(self, side: PositionSide) -> str:
        return self.long_action if side == "long" else self.short_action

    def side_for(self, action: str) -> PositionSide | None:
        """Map any long/short synonym to a side; None for unknown actions."""
        normalized = action.strip().lower()
        if normalized in _LONG_SYNONYMS:
            return "long"
        if normalized in _SHORT_SYNONYMS:
            return "short"
        return None

    def clamp_leverage(self, leverage: float) -> float:
        low = max(1.0, self.min_leverage)
        high = min(ABSOLUTE_MAX_LEVERAGE, self.max_leverage)
        return float(max(low, min(leverage, high)))


SIMULATED_POLICY = PolicyConfig(
    name="simulated",
    long_action="buy",
    short_action="sell",
    min_confidence=65.0,
    execute_min_confidence=70.0,
    min_leverage=1.0,
    max_leverage=10.0,
    min_order_amount=1.0,
    has_fallback=True,
)

BINGX_POLICY = PolicyConfig(
    name="bingx",
    long_action="long",
    short_action="short",
    min_confidence=70.0,
    execute_min_confidence=70.0,
    min_leverage=1.0,
    max_leverage=125.0,
    scale_to_balance=True,
    min_order_amount=11.73,
)

BINGX_AGGRESSIVE_POLICY = PolicyConfig(
    name="bingx_aggressive",
    long_action="long",
    short_action="short",
    min_confidence=65.0,
    execute_min_confidence=65.0,
    min_leverage=10.0,
    max_leverage=125.0,
    single_position_only=True,
    scale_to_balance=True,
    min_order_amount=11.73,
)

_POLICIES: dict[PolicyVariant, PolicyConfig] = {
    PolicyVariant.SIMULATED: SIMULATED_POLICY,
    PolicyVariant.BINGX: BINGX_POLICY,
    PolicyVariant.BINGX_AGGRESSIVE: BINGX_AGGRESSIVE_POLICY,
}


def get_policy(variant: PolicyVariant) -> PolicyConfig:
    return _POLICIES[variant]


def risk_tier(balance: float) -> RiskTier:
    """Bucket the account balance into the tier shown to the model."""
    if balance < 100:
        return "low"
    if balance < 1000:
        return "medium"
    return "high"
