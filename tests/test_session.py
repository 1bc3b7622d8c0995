from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from btc_trading.ai.adapter import AIDecisionAdapter
from btc_trading.ai.openai_client import OpenAIClient
from btc_trading.ai.policy import SIMULATED_POLICY
from btc_trading.config import Settings
from btc_trading.exec.bingx import BingXAPIError, OrderRequest, OrderResult
from btc_trading.exec.paper import PaperAccount
from btc_trading.journal.store import JournalStore
from btc_trading.session import TradingSession
from btc_trading.types import Candle, Position

_BUY_REPLY = (
    '{"action":"buy","confidence":80,"amount":12,"leverage":5,"reasoning":"trend up"}'
)
_EVENT_REPLY = '{"reasoning":"breakout","recommendation":"long","confidence":80}'


class _ScriptedClient:
    def __init__(self, reply: str) -> None:
        self._reply = reply
        self.calls = 0

    async def complete(self, prompt: str, *, system: str) -> str:
        self.calls += 1
        return self._reply


class _GatedClient:
    """Blocks in ``complete`` until the test releases it."""

    def __init__(self, reply: str) -> None:
        self._reply = reply
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, prompt: str, *, system: str) -> str:
        self.started.set()
        await self.release.wait()
        return self._reply


class _FailingExchange:
    async def place_order(self, order: OrderRequest) -> OrderResult:
        raise BingXAPIError("insufficient margin")


class _RecordingExchange:
    def __init__(self) -> None:
        self.orders: list[OrderRequest] = []

    async def place_order(self, order: OrderRequest) -> OrderResult:
        self.orders.append(order)
        return OrderResult(order_id=f"bx-{len(self.orders)}", raw={"code": 0})


def _session(
    tmp_path: Path,
    client: object,
    *,
    exchange: object | None = None,
    **overrides: object,
) -> TradingSession:
    settings = Settings(journal_dir=tmp_path, auto_trading=True, **overrides)
    adapter = AIDecisionAdapter(
        client,  # type: ignore[arg-type]
        SIMULATED_POLICY,
        min_amount=settings.min_position_amount,
        max_amount=settings.max_position_amount,
    )
    return TradingSession(
        settings,
        account=PaperAccount(tmp_path, initial_balance=500.0),
        adapter=adapter,
        journal=JournalStore(tmp_path),
        exchange=exchange,  # type: ignore[arg-type]
        clock=lambda: 10_000_000,
    )


def test_cycle_opens_ai_position(tmp_path: Path) -> None:
    session = _session(tmp_path, _ScriptedClient(_BUY_REPLY))

    async def scenario() -> str:
        await session.on_price(50_000.0)
        session.set_ai_active(True)
        result = await session.run_analysis_cycle()
        return result.status

    assert asyncio.run(scenario()) == "opened"
    positions = session.account.positions
    assert len(positions) == 1
    assert positions[0].is_ai_managed
    assert positions[0].side == "long"
    assert session.state.last_ai_action_at == 10_000_000
    assert session.account.balance == pytest.approx(500.0 - 12.0 / 5.0)


def test_inactive_session_skips_model_call(tmp_path: Path) -> None:
    client = _ScriptedClient(_BUY_REPLY)
    session = _session(tmp_path, client)

    async def scenario() -> str:
        await session.on_price(50_000.0)
        return (await session.run_analysis_cycle()).status

    assert asyncio.run(scenario()) == "ai_inactive"
    assert client.calls == 0


def test_dry_run_does_not_touch_account(tmp_path: Path) -> None:
    session = _session(tmp_path, _ScriptedClient(_BUY_REPLY))

    async def scenario() -> str:
        await session.on_price(50_000.0)
        session.set_ai_active(True)
        return (await session.run_analysis_cycle(dry_run=True)).status

    assert asyncio.run(scenario()) == "opened_dry_run"
    assert session.account.positions == []
    assert session.state.last_ai_action_at is None


def test_decision_is_discarded_when_positions_change(tmp_path: Path) -> None:
    async def scenario() -> tuple[str, list[str], list[Position]]:
        client = _GatedClient(_BUY_REPLY)
        session = _session(tmp_path, client)
        await session.on_price(50_000.0)
        session.set_ai_active(True)

        cycle = asyncio.create_task(session.run_analysis_cycle())
        await client.started.wait()
        await session.open_manual("short", 100.0, 10.0)
        client.release.set()
        result = await cycle
        return result.status, result.warnings, session.account.positions

    status, warnings, positions = asyncio.run(scenario())
    assert status == "stale_discarded"
    assert "stale decision discarded" in warnings
    assert len(positions) == 1
    assert not positions[0].is_ai_managed


def test_decision_is_discarded_after_deactivation(tmp_path: Path) -> None:
    async def scenario() -> tuple[str, int]:
        client = _GatedClient(_BUY_REPLY)
        session = _session(tmp_path, client)
        await session.on_price(50_000.0)
        session.set_ai_active(True)

        cycle = asyncio.create_task(session.run_analysis_cycle())
        await client.started.wait()
        session.set_ai_active(False)
        client.release.set()
        result = await cycle
        return result.status, len(session.account.positions)

    status, open_positions = asyncio.run(scenario())
    assert status == "stale_discarded"
    assert open_positions == 0


def test_exchange_failure_fails_closed(tmp_path: Path) -> None:
    session = _session(
        tmp_path,
        _ScriptedClient(_BUY_REPLY),
        exchange=_FailingExchange(),
        mode="live",
    )

    async def scenario() -> str:
        await session.on_price(50_000.0)
        session.set_ai_active(True)
        return (await session.run_analysis_cycle()).status

    assert asyncio.run(scenario()) == "order_failed"
    assert session.account.positions == []
    assert session.state.last_ai_action_at is None


def test_live_order_id_is_recorded(tmp_path: Path) -> None:
    exchange = _RecordingExchange()
    session = _session(tmp_path, _ScriptedClient(_BUY_REPLY), exchange=exchange, mode="live")

    async def scenario() -> str:
        await session.on_price(60_000.0)
        session.set_ai_active(True)
        return (await session.run_analysis_cycle()).status

    assert asyncio.run(scenario()) == "opened"
    assert exchange.orders[0].side == "BUY"
    assert exchange.orders[0].quantity == round(12.0 / 60_000.0, 6)
    assert session.account.positions[0].order_id == "bx-1"


class _GatedExchange(_RecordingExchange):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def place_order(self, order: OrderRequest) -> OrderResult:
        self.started.set()
        await self.release.wait()
        return await super().place_order(order)


def test_price_tick_waits_for_inflight_order(tmp_path: Path) -> None:
    exchange = _GatedExchange()
    session = _session(tmp_path, _ScriptedClient(_BUY_REPLY), exchange=exchange, mode="live")

    async def scenario() -> tuple[bool, str]:
        await session.on_price(60_000.0)
        session.set_ai_active(True)
        cycle = asyncio.create_task(session.run_analysis_cycle())
        await exchange.started.wait()
        tick = asyncio.create_task(session.on_price(61_000.0))
        await asyncio.sleep(0)
        blocked = not tick.done()
        exchange.release.set()
        result = await cycle
        await tick
        return blocked, result.status

    assert asyncio.run(scenario()) == (True, "opened")
    assert session.state.last_price == 61_000.0
    assert session.account.positions[0].entry_price == 60_000.0


def test_invalid_price_tick_is_dropped(tmp_path: Path) -> None:
    session = _session(tmp_path, _ScriptedClient(_BUY_REPLY))

    async def scenario() -> None:
        await session.on_price(50_000.0)
        assert await session.on_price("nan") is None
        assert await session.on_price(-1.0) is None

    asyncio.run(scenario())
    assert session.state.last_price == 50_000.0


def test_price_tick_liquidates_and_journals(tmp_path: Path) -> None:
    session = _session(tmp_path, _ScriptedClient(_BUY_REPLY))

    async def scenario() -> int:
        await session.on_price(50_000.0)
        await session.open_manual("long", 100.0, 20.0)
        version = session.state.position_version
        result = await session.on_price(47_000.0)
        assert result is not None
        assert len(result.liquidated) == 1
        return session.state.position_version - version

    assert asyncio.run(scenario()) == 1
    assert session.account.positions == []
    assert session.account.balance == pytest.approx(495.0)
    rows = JournalStore(tmp_path).load_recent(10, event_type="liquidation")
    assert len(rows) == 1
    assert rows[0]["payload"]["loss"] == pytest.approx(-5.0)


def test_manual_close_ignores_pnl_sign(tmp_path: Path) -> None:
    session = _session(tmp_path, _ScriptedClient(_BUY_REPLY))

    async def scenario() -> float:
        await session.on_price(50_000.0)
        position = await session.open_manual("long", 100.0, 10.0)
        assert isinstance(position, Position)
        await session.on_price(49_500.0)
        order = await session.close_manual(position.id)
        assert isinstance(order, dict)
        return float(order["realized_pnl"])

    assert asyncio.run(scenario()) == pytest.approx(-10.0)
    assert session.account.balance == pytest.approx(490.0)


def _flat_candles(count: int, price: float = 100.0) -> list[Candle]:
    return [
        Candle(
            timestamp=i * 900_000,
            open=price,
            high=price + 1,
            low=price - 1,
            close=price,
            volume=10.0,
        )
        for i in range(count)
    ]


def test_ema_events_are_enriched_and_promoted(tmp_path: Path) -> None:
    session = _session(tmp_path, _ScriptedClient(_EVENT_REPLY))

    async def scenario() -> int:
        await session.on_candles("15m", _flat_candles(20))
        await session.on_price(99.0, timestamp=1_000)
        await session.on_price(101.0, timestamp=2_000)
        enriched = await session.enrich_pending_events()
        return len(enriched)

    assert asyncio.run(scenario()) == 2
    history = list(session.state.event_history)
    assert {e.ema_kind for e in history} == {"ema55", "ema200"}
    assert all(e.recommendation == "LONG" for e in history)
    assert len(session.state.trading_marks) == 2


def test_event_history_is_bounded(tmp_path: Path) -> None:
    session = _session(tmp_path, _ScriptedClient(_EVENT_REPLY), ema_event_cooldown_sec=0)

    async def scenario() -> None:
        await session.on_candles("15m", _flat_candles(20))
        price = 99.0
        for step in range(14):
            await session.on_price(price, timestamp=1_000 * (step + 1))
            price = 101.0 if price == 99.0 else 99.0
        await session.enrich_pending_events()

    asyncio.run(scenario())
    assert len(session.state.event_history) == 10


def test_unreadable_model_reply_keeps_events_as_neutral(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    async def _gateway_page(self: httpx.AsyncClient, url: str, **kwargs: object) -> httpx.Response:
        return httpx.Response(
            200, text="<html>gateway</html>", request=httpx.Request("POST", url)
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", _gateway_page)
    client = OpenAIClient(Settings(journal_dir=tmp_path, openai_api_key="sk-test"))
    session = _session(tmp_path, client)

    async def scenario() -> int:
        await session.on_candles("15m", _flat_candles(20))
        await session.on_price(99.0, timestamp=1_000)
        await session.on_price(101.0, timestamp=2_000)
        enriched = await session.enrich_pending_events()
        return len(enriched)

    assert asyncio.run(scenario()) == 2
    history = list(session.state.event_history)
    assert len(history) == 2
    assert all(e.recommendation == "NEUTRAL" for e in history)
    assert all(e.confidence == 0.0 for e in history)
    assert all(e.error == "openai_non_json_body" for e in history)
    assert session.state.trading_marks == []
