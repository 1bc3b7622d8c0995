"""Paper trading account with persistent local state."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from btc_trading.risk.rules import (
    TickResult,
    apply_price_tick,
    liquidation_price,
    realized_close_value,
    refresh_position,
    required_margin,
)
from btc_trading.types import OpenPositionInstruction, Position, PositionSide


@dataclass(slots=True)
class _PaperState:
    balance: float
    initial_balance: float
    realized_pnl: float
    positions: list[Position] = field(default_factory=list)


class PaperAccount:
    """Simulated margin account owning the position collection.

    Opening posts ``amount / leverage`` as margin. Closing credits the margin
    plus PnL, while a liquidation forfeits it.
    """

    def __init__(self, state_dir: Path, *, initial_balance: float = 500.0) -> None:
        self._state_file = state_dir / "paper_state.json"
        self._state = self._load_state(initial_balance)

    @property
    def balance(self) -> float:
        return self._state.balance

    @property
    def positions(self) -> list[Position]:
        return list(self._state.positions)

    @property
    def realized_pnl(self) -> float:
        return self._state.realized_pnl

    def get_position(self, position_id: str) -> Position | None:
        for position in self._state.positions:
            if position.id == position_id:
                return position
        return None

    def open_position(
        self,
        *,
        side: PositionSide,
        amount: float,
        leverage: float,
        entry_price: float,
        opened_at: int,
        is_ai_managed: bool = False,
        ai_reasoning: str | None = None,
        confidence: float | None = None,
        order_id: str | None = None,
    ) -> Position:
        """Open a position and deduct its margin."""
        if amount <= 0:
            raise ValueError("amount_must_be_positive")
        if leverage < 1:
            raise ValueError("leverage_must_be_at_least_one")
        if entry_price <= 0:
            raise ValueError("entry_price_must_be_positive")
        margin = required_margin(amount, leverage)
        if margin > self._state.balance:
            raise ValueError("insufficient_funds")

        position = Position(
            id=order_id or uuid.uuid4().hex[:12],
            side=side,
            amount=float(amount),
            entry_price=float(entry_price),
            leverage=float(leverage),
            opened_at=opened_at,
            is_ai_managed=is_ai_managed,
            ai_reasoning=ai_reasoning,
            confidence=confidence,
            order_id=order_id,
        )
        position.liquidation_price = liquidation_price(position)
        self._state.positions.append(position)
        self._state.balance -= margin
        self._persist()
        return position

    def apply_open(
        self,
        instruction: OpenPositionInstruction,
        opened_at: int,
        *,
        order_id: str | None = None,
    ) -> Position:
        return self.open_position(
            side=instruction.side,
            amount=instruction.amount,
            leverage=instruction.leverage,
            entry_price=instruction.entry_price,
            opened_at=opened_at,
            is_ai_managed=instruction.is_ai_managed,
            ai_reasoning=instruction.ai_reasoning,
            confidence=instruction.confidence,
            order_id=order_id,
        )

    def close_position(self, position_id: str, exit_price: float, reason: str) -> dict[str, Any]:
        """Close one position at ``exit_price`` and realize its PnL."""
        position = self.get_position(position_id)
        if position is None:
            raise RuntimeError("position_not_found")

        refresh_position(position, exit_price)
        credit = realized_close_value(position, exit_price)
        position.status = "closed"
        self._state.balance += credit
        self._state.realized_pnl += position.pnl
        self._state.positions = [p for p in self._state.positions if p.id != position_id]
        self._persist()
        return {
            "action": "close",
            "position_id": position.id,
            "side": position.side,
            "amount": position.amount,
            "leverage": position.leverage,
            "price": float(exit_price),
            "reason": reason,
            "realized_pnl": float(position.pnl),
            "status": "filled",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def mark_to_market(self, last_price: float, now_ms: int) -> TickResult:
        """Recompute PnL for every open position and drop liquidated ones."""
        result = apply_price_tick(self._state.positions, last_price, now_ms)
        self._state.positions = result.active
        for outcome in result.outcomes:
            self._state.realized_pnl += outcome.loss
        if result.liquidated:
            self._persist()
        return result

    def equity(self) -> float:
        """Balance plus posted margin plus unrealized PnL."""
        return self._state.balance + sum(p.margin + p.pnl for p in self._state.positions)

    def _load_state(self, initial_balance: float) -> _PaperState:
        if not self._state_file.exists():
            return _PaperState(
                balance=initial_balance,
                initial_balance=initial_balance,
                realized_pnl=0.0,
            )

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        positions = [
            Position(**payload)
            for payload in raw.get("positions", [])
            if isinstance(payload, dict)
        ]
        return _PaperState(
            balance=float(raw.get("balance", initial_balance)),
            initial_balance=float(raw.get("initial_balance", initial_balance)),
            realized_pnl=float(raw.get("realized_pnl", 0.0)),
            positions=[p for p in positions if p.status == "open"],
        )

    def _persist(self) -> None:
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        payload: dict[str, Any] = {
            "balance": self._state.balance,
            "initial_balance": self._state.initial_balance,
            "realized_pnl": self._state.realized_pnl,
            "positions": [asdict(p) for p in self._state.positions],
        }
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.write_text(serialized, encoding="utf-8")
