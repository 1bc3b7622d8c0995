from __future__ import annotations

import asyncio
import hashlib
import hmac
from pathlib import Path

import pytest

from btc_trading.config import Settings
from btc_trading.exec.bingx import (
    BingXAPIError,
    BingXClient,
    OrderRequest,
    build_close_request,
    build_order_request,
    sign_params,
)
from btc_trading.types import ClosePositionInstruction, OpenPositionInstruction, Position


def _instruction(side: str) -> OpenPositionInstruction:
    return OpenPositionInstruction(
        side=side,  # type: ignore[arg-type]
        amount=15.0,
        leverage=20.0,
        entry_price=60_000.0,
        ai_reasoning="test",
        confidence=80.0,
    )


def test_sign_params_sorts_keys() -> None:
    signed = sign_params({"timestamp": "2", "symbol": "BTC-USDT"}, "secret")
    query = "symbol=BTC-USDT&timestamp=2"
    expected = hmac.new(b"secret", query.encode("utf-8"), hashlib.sha256).hexdigest()
    assert signed == f"{query}&signature={expected}"


def test_build_order_request_long_and_short() -> None:
    long_order = build_order_request(_instruction("long"), "BTC-USDT")
    assert long_order == OrderRequest(
        symbol="BTC-USDT",
        side="BUY",
        position_side="LONG",
        type="MARKET",
        quantity=0.00025,
        leverage=20.0,
    )
    short_order = build_order_request(_instruction("short"), "BTC-USDT")
    assert (short_order.side, short_order.position_side) == ("SELL", "SHORT")


def test_quantity_is_rounded_to_six_decimals() -> None:
    instruction = _instruction("long")
    instruction.entry_price = 67_123.45
    order = build_order_request(instruction, "BTC-USDT")
    assert order.quantity == round(15.0 / 67_123.45, 6)


def test_build_close_request_reduces_own_side() -> None:
    position = Position(
        id="p1",
        side="long",
        amount=15.0,
        entry_price=60_000.0,
        leverage=20.0,
        opened_at=0,
    )
    order = build_close_request(
        position,
        ClosePositionInstruction(position_id="p1", exit_price=61_000.0),
        "BTC-USDT",
    )
    assert (order.side, order.position_side) == ("SELL", "LONG")
    assert order.quantity == 0.00025


def test_place_order_without_credentials_fails_closed(tmp_path: Path) -> None:
    settings = Settings(journal_dir=tmp_path, bingx_api_key="", bingx_secret_key="")
    client = BingXClient(settings)
    order = build_order_request(_instruction("long"), "BTC-USDT")
    with pytest.raises(BingXAPIError, match="missing_bingx_credentials"):
        asyncio.run(client.place_order(order))
