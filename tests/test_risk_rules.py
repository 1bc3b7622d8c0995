from __future__ import annotations

import math

import pytest

from btc_trading.risk.rules import (
    apply_price_tick,
    compute_pnl,
    liquidation_price,
    realized_close_value,
    refresh_position,
    required_margin,
    should_liquidate,
)
from btc_trading.types import Position


def _position(
    side: str = "long",
    amount: float = 100.0,
    entry: float = 50_000.0,
    leverage: float = 10.0,
    status: str = "open",
) -> Position:
    return Position(
        id=f"{side}-{leverage}",
        side=side,  # type: ignore[arg-type]
        amount=amount,
        entry_price=entry,
        leverage=leverage,
        opened_at=0,
        status=status,  # type: ignore[arg-type]
    )


def test_liquidation_price_long_and_short() -> None:
    assert liquidation_price(_position("long")) == pytest.approx(45_000.0)
    assert liquidation_price(_position("short")) == pytest.approx(55_000.0)


def test_one_x_never_liquidates() -> None:
    long_position = _position("long", leverage=1.0)
    short_position = _position("short", leverage=1.0)
    assert liquidation_price(long_position) == 0.0
    assert liquidation_price(short_position) == math.inf
    assert not should_liquidate(long_position, 1.0)
    assert not should_liquidate(short_position, 1_000_000.0)


def test_pnl_scales_with_leverage() -> None:
    assert compute_pnl(_position("long"), 51_000.0) == pytest.approx(20.0)
    assert compute_pnl(_position("short"), 51_000.0) == pytest.approx(-20.0)


def test_pnl_degenerate_inputs_are_zero() -> None:
    assert compute_pnl(_position(entry=0.0), 51_000.0) == 0.0
    assert compute_pnl(_position(), math.nan) == 0.0


def test_refresh_position_is_idempotent() -> None:
    position = _position()
    refresh_position(position, 50_500.0)
    first = (position.pnl, position.liquidation_price)
    refresh_position(position, 50_500.0)
    assert (position.pnl, position.liquidation_price) == first


def test_margin_and_close_value() -> None:
    assert required_margin(100.0, 10.0) == 10.0
    assert required_margin(100.0, 0.0) == 0.0
    assert realized_close_value(_position(), 51_000.0) == pytest.approx(30.0)


def test_price_tick_liquidates_and_forfeits_margin() -> None:
    position = _position("long", amount=100.0, entry=50_000.0, leverage=20.0)
    result = apply_price_tick([position], 47_000.0, now_ms=123)

    assert result.active == []
    assert result.liquidated == [position]
    assert position.status == "liquidated"
    assert position.pnl == pytest.approx(-5.0)
    outcome = result.outcomes[0]
    assert outcome.position_id == position.id
    assert outcome.loss == pytest.approx(-5.0)
    assert outcome.timestamp == 123


def test_price_tick_keeps_healthy_and_drops_closed_positions() -> None:
    healthy = _position("short", leverage=5.0)
    closed = _position("long", status="closed")
    result = apply_price_tick([healthy, closed], 49_000.0, now_ms=1)
    assert result.active == [healthy]
    assert result.liquidated == []
    assert healthy.pnl == pytest.approx(10.0)
