"""Position risk math: liquidation price, PnL and auto-liquidation."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from btc_trading.types import LiquidationOutcome, Position

MAX_LEVERAGE = 125.0


@dataclass(slots=True)
class TickResult:
    """Positions still open after a price tick plus the ones force-closed."""

    active: list[Position] = field(default_factory=list)
    liquidated: list[Position] = field(default_factory=list)
    outcomes: list[LiquidationOutcome] = field(default_factory=list)


def liquidation_price(position: Position) -> float:
    """Simplified isolated-margin liquidation price.

    Leverage of 1x or less never liquidates: longs get 0 and shorts +inf.
    """
    if position.leverage <= 1 or position.entry_price <= 0:
        return 0.0 if position.side == "long" else math.inf
    if position.side == "long":
        price = position.entry_price * (1 - 1 / position.leverage)
    else:
        price = position.entry_price * (1 + 1 / position.leverage)
    return max(0.0, price)


def compute_pnl(position: Position, current_price: float) -> float:
    """Unrealized PnL in USD; degenerate inputs yield 0."""
    if (
        position.entry_price <= 0
        or position.amount <= 0
        or position.leverage <= 0
        or not math.isfinite(current_price)
    ):
        return 0.0
    if position.side == "long":
        price_diff = current_price - position.entry_price
    else:
        price_diff = position.entry_price - current_price
    pnl = (price_diff / position.entry_price) * position.amount * position.leverage
    return pnl if math.isfinite(pnl) else 0.0


def should_liquidate(position: Position, current_price: float) -> bool:
    threshold = liquidation_price(position)
    if position.side == "long":
        return current_price <= threshold
    return current_price >= threshold


def required_margin(amount: float, leverage: float) -> float:
    """Margin posted for a notional ``amount`` at ``leverage``."""
    if amount <= 0 or leverage <= 0:
        return 0.0
    return amount / leverage


def realized_close_value(position: Position, exit_price: float) -> float:
    """Balance credited on a voluntary close: margin back plus PnL."""
    return position.margin + compute_pnl(position, exit_price)


def refresh_position(position: Position, current_price: float) -> Position:
    """Recompute derived fields in place; idempotent for the same price."""
    position.liquidation_price = liquidation_price(position)
    position.pnl = compute_pnl(position, current_price)
    return position


def apply_price_tick(
    positions: list[Position],
    current_price: float,
    now_ms: int,
) -> TickResult:
    """Mark every open position to ``current_price`` and liquidate breaches.

    Liquidated positions forfeit their whole margin and leave the active set.
    Positions that are no longer open are dropped from the result.
    """
    result = TickResult()
    for position in positions:
        if position.status != "open":
            continue
        refresh_position(position, current_price)
        if should_liquidate(position, current_price):
            position.status = "liquidated"
            position.pnl = -position.margin
            result.liquidated.append(position)
            result.outcomes.append(
                LiquidationOutcome(
                    position_id=position.id,
                    price=current_price,
                    loss=-position.margin,
                    timestamp=now_ms,
                )
            )
            continue
        result.active.append(position)
    return result
