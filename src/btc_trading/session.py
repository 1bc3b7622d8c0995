"""Trading session: market state, EMA events, AI cycles and execution."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Callable, Iterable, Protocol

from btc_trading.ai.adapter import AIDecisionAdapter
from btc_trading.ai.openai_client import OpenAIClient
from btc_trading.ai.policy import get_policy
from btc_trading.ai.schemas import AIDecision
from btc_trading.config import Settings
from btc_trading.data.binance import BinanceDataClient
from btc_trading.errors import DataQualityError, ExternalServiceError
from btc_trading.exec.bingx import (
    BingXClient,
    OrderRequest,
    OrderResult,
    build_close_request,
    build_order_request,
)
from btc_trading.exec.paper import PaperAccount
from btc_trading.journal.store import JournalStore
from btc_trading.market.candles import CandleStore, summarize_timeframes, validate_price
from btc_trading.risk.rules import TickResult, required_margin
from btc_trading.scheduler import RepeatingTask
from btc_trading.signals.ema_events import EMAEventDetector, EMASample, promote_to_mark
from btc_trading.types import (
    Candle,
    ClosePositionInstruction,
    CycleResult,
    EMAEvent,
    OpenPositionInstruction,
    Position,
    PositionSide,
    Rejection,
    Ticker24h,
    TradingMark,
)
from btc_trading.utils.logging import get_logger, log_risk_event

EVENT_HISTORY_SIZE = 10
REASON_STALE_DECISION = "stale decision discarded"
REASON_AI_INACTIVE = "AI trading inactive"


class OrderGateway(Protocol):
    async def place_order(self, order: OrderRequest) -> OrderResult:
        """Submit one order to the exchange."""


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class SessionState:
    """Mutable session state; guarded by the session lock."""

    last_price: float | None = None
    ticker: Ticker24h | None = None
    ai_active: bool = False
    ai_epoch: int = 0
    position_version: int = 0
    last_ai_action_at: int | None = None
    last_decision: AIDecision | None = None
    event_history: deque[EMAEvent] = field(
        default_factory=lambda: deque(maxlen=EVENT_HISTORY_SIZE)
    )
    trading_marks: list[TradingMark] = field(default_factory=list)
    primary_emas: tuple[float, float] | None = None


class TradingSession:
    """Single owner of market data, positions and AI activity.

    All state changes happen under one asyncio lock. The model call in an
    analysis cycle runs outside the lock; its result is applied only if
    neither the AI activation epoch nor the position set changed meanwhile.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        account: PaperAccount,
        adapter: AIDecisionAdapter,
        journal: JournalStore,
        exchange: OrderGateway | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if settings.is_live_mode and exchange is None:
            raise ValueError("live_mode_requires_exchange")
        self._settings = settings
        self._account = account
        self._adapter = adapter
        self._journal = journal
        self._exchange = exchange
        self._clock = clock
        self._lock = asyncio.Lock()
        self._stores = {
            interval: CandleStore(interval, settings.candle_store_capacity)
            for interval in settings.interval_list
        }
        self._detector = EMAEventDetector(
            tolerance=settings.ema_touch_tolerance,
            cooldown_ms=settings.ema_event_cooldown_sec * 1000,
        )
        self.state = SessionState()
        self._logger = get_logger("btc_trading.session")

    @classmethod
    def from_settings(cls, settings: Settings) -> "TradingSession":
        """Wire the production collaborators from configuration."""
        adapter = AIDecisionAdapter(
            OpenAIClient(settings),
            get_policy(settings.policy_variant),
            min_amount=settings.min_position_amount,
            max_amount=settings.max_position_amount,
            symbol=settings.symbol,
            primary_interval=settings.primary_interval,
        )
        return cls(
            settings,
            account=PaperAccount(settings.journal_dir, initial_balance=settings.initial_balance),
            adapter=adapter,
            journal=JournalStore(settings.journal_dir),
            exchange=BingXClient(settings) if settings.is_live_mode else None,
        )

    @property
    def account(self) -> PaperAccount:
        return self._account

    @property
    def adapter(self) -> AIDecisionAdapter:
        return self._adapter

    def store(self, interval: str) -> CandleStore:
        return self._stores[interval]

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def on_candles(self, interval: str, candles: Iterable[Candle]) -> int:
        """Merge candles into ``interval``'s store; returns how many were kept."""
        store = self._stores.get(interval)
        if store is None:
            raise ValueError(f"unknown_interval: {interval}")
        async with self._lock:
            accepted = store.extend(candles)
            if interval == self._settings.primary_interval:
                self._refresh_primary_emas()
        return accepted

    async def on_candle(self, interval: str, candle: Candle) -> bool:
        return await self.on_candles(interval, [candle]) == 1

    async def on_ticker(self, ticker: Ticker24h) -> None:
        async with self._lock:
            self.state.ticker = ticker

    async def on_price(self, price: Any, timestamp: int | None = None) -> TickResult | None:
        """Apply one live price: mark to market, liquidate, detect EMA events.

        Unusable prices are logged and dropped without touching any state.
        """
        try:
            value = validate_price(price)
        except DataQualityError as exc:
            self._logger.warning("price_tick_dropped", price=repr(price), reason=str(exc))
            return None

        tick_ms = timestamp if timestamp is not None else self._clock()
        async with self._lock:
            self.state.last_price = value
            result = self._account.mark_to_market(value, tick_ms)
            if result.liquidated:
                self.state.position_version += 1
                for position, outcome in zip(result.liquidated, result.outcomes):
                    log_risk_event(
                        self._logger,
                        event_type="liquidation",
                        action="position_closed",
                        position_id=position.id,
                        side=position.side,
                        price=outcome.price,
                        loss=outcome.loss,
                    )
                    self._journal.append(
                        "liquidation",
                        {**asdict(outcome), "side": position.side, "leverage": position.leverage},
                    )
            self._observe_emas(value, tick_ms)
        return result

    async def refresh_market(self, data_client: BinanceDataClient) -> None:
        """Pull candles for every interval plus the 24h ticker and last price."""
        symbol = self._settings.symbol
        for interval in self._stores:
            candles = await asyncio.to_thread(
                data_client.fetch_candles,
                symbol,
                interval,
                self._settings.kline_limit,
            )
            await self.on_candles(interval, candles)
        ticker = await asyncio.to_thread(data_client.fetch_ticker_24h, symbol)
        await self.on_ticker(ticker)
        await self.on_price(ticker.last_price)
        self._journal.append(
            "market_data",
            {
                "symbol": symbol,
                "rows": {interval: len(store) for interval, store in self._stores.items()},
                "last_price": ticker.last_price,
                "change_pct_24h": ticker.change_pct,
            },
        )

    async def poll_price(self, data_client: BinanceDataClient) -> None:
        try:
            price = await asyncio.to_thread(data_client.fetch_price, self._settings.symbol)
        except DataQualityError as exc:
            self._logger.warning("price_poll_dropped", reason=str(exc))
            return
        await self.on_price(price)

    def _refresh_primary_emas(self) -> None:
        snapshot = self._stores[self._settings.primary_interval].indicators()
        if snapshot.ema55 and snapshot.ema200:
            self.state.primary_emas = (snapshot.ema55[-1], snapshot.ema200[-1])

    def _observe_emas(self, price: float, tick_ms: int) -> None:
        if self.state.primary_emas is None:
            return
        ema55, ema200 = self.state.primary_emas
        events = self._detector.observe(
            EMASample(price=price, ema55=ema55, ema200=ema200, timestamp=tick_ms)
        )
        for event in events:
            self._journal.append("ema_event", asdict(event))

    # ------------------------------------------------------------------
    # EMA event enrichment
    # ------------------------------------------------------------------

    async def enrich_pending_events(self) -> list[EMAEvent]:
        """Ask the model about queued EMA events and record the results."""
        async with self._lock:
            pending = self._detector.drain_pending()
            ticker = self.state.ticker

        enriched: list[EMAEvent] = []
        for event in pending:
            result = await self._adapter.analyze_event(event, ticker)
            enriched.append(result)
            async with self._lock:
                self.state.event_history.appendleft(result)
                mark = promote_to_mark(result, self._settings.trading_mark_min_confidence)
                if mark is not None:
                    self.state.trading_marks.append(mark)
            self._journal.append(
                "ema_event",
                {**asdict(result), "trading_mark": asdict(mark) if mark else None},
            )
        return enriched

    # ------------------------------------------------------------------
    # AI activity
    # ------------------------------------------------------------------

    def set_ai_active(self, active: bool) -> None:
        """Toggle AI trading; each change invalidates in-flight decisions."""
        if self.state.ai_active == active:
            return
        self.state.ai_active = active
        self.state.ai_epoch += 1
        self._logger.info("ai_activity_changed", active=active, epoch=self.state.ai_epoch)

    async def run_analysis_cycle(self, *, dry_run: bool = False) -> CycleResult:
        """Run one AI cycle: snapshot, decide, re-validate, plan, execute.

        The model call runs without the lock. Planning and the exchange order
        run under it, so a live order and the local position change are applied
        together and price ticks wait for the order (bounded by the client
        timeout).
        """
        started = perf_counter()
        result = CycleResult(status="unknown")

        async with self._lock:
            if not self.state.ai_active:
                result.warnings.append(REASON_AI_INACTIVE)
                return self._finish(result, started, status="ai_inactive", journal=False)
            price = self.state.last_price
            if price is None:
                result.warnings.append("no_price")
                return self._finish(result, started, status="no_market_data", journal=False)
            summaries = summarize_timeframes(self._stores.values())
            snapshot = self._adapter.build_snapshot(
                price=price,
                ticker=self.state.ticker,
                summaries=summaries,
                balance=self._account.balance,
                positions=self._account.positions,
            )
            epoch = self.state.ai_epoch
            version = self.state.position_version

        self._journal.append(
            "cycle_start",
            {
                "symbol": snapshot.symbol,
                "mode": self._settings.mode.value,
                "policy": self._adapter.policy.name,
                "dry_run": dry_run,
                "price": price,
                "started_at": datetime.now(timezone.utc).isoformat(),
            },
        )

        try:
            decision = await self._adapter.decide(snapshot)
            if isinstance(decision, Rejection):
                result.warnings.append(decision.reason)
                self._journal.append("ai_decision", asdict(decision))
                return self._finish(result, started, status="ai_unavailable")

            result.decisions.append(decision.model_dump())
            self._journal.append("ai_decision", decision.model_dump())

            async with self._lock:
                if epoch != self.state.ai_epoch or not self.state.ai_active:
                    return self._discard(result, started, cause="ai_deactivated")
                if version != self.state.position_version:
                    return self._discard(result, started, cause="positions_changed")
                self.state.last_decision = decision

                if not self._settings.auto_trading:
                    return self._finish(result, started, status="decision_only")

                current_ms = self._clock()
                plan = self._adapter.plan(
                    decision,
                    balance=self._account.balance,
                    positions=self._account.positions,
                    last_ai_action_at=self.state.last_ai_action_at,
                    now_ms=current_ms,
                    price=self.state.last_price or price,
                )
                self._journal.append(
                    "risk_check",
                    {
                        "allowed": not isinstance(plan, Rejection),
                        "plan": type(plan).__name__,
                        **asdict(plan),
                    },
                )
                if isinstance(plan, Rejection):
                    log_risk_event(
                        self._logger,
                        event_type=plan.code,
                        action="decision_rejected",
                        reason=plan.reason,
                    )
                    result.warnings.append(plan.reason)
                    return self._finish(result, started, status="rejected")

                try:
                    order = await self._execute(plan, current_ms, dry_run=dry_run)
                except ExternalServiceError as exc:
                    self._logger.error("order_failed", error=str(exc))
                    self._journal.append("error", {"stage": "order", "error": str(exc)})
                    result.warnings.append(f"order_failed: {exc}")
                    return self._finish(result, started, status="order_failed")

                result.orders.append(order)
                self._journal.append("order", order)
                if not dry_run:
                    self.state.last_ai_action_at = current_ms
                    self.state.position_version += 1
                status = "closed" if isinstance(plan, ClosePositionInstruction) else "opened"
                return self._finish(
                    result,
                    started,
                    status=f"{status}_dry_run" if dry_run else status,
                )

        except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
            self._logger.exception("analysis_cycle_failed", error=str(exc))
            self._journal.append("error", {"stage": "analysis_cycle", "error": str(exc)})
            return self._finish(result, started, status="failed")

    # ------------------------------------------------------------------
    # Manual trading
    # ------------------------------------------------------------------

    async def open_manual(
        self,
        side: PositionSide,
        amount: float,
        leverage: float,
    ) -> Position | Rejection:
        """Open a user position at the last price."""
        async with self._lock:
            price = self.state.last_price
            if price is None:
                return Rejection(code="no_price", reason="no market price available")
            if amount <= 0 or leverage < 1:
                return Rejection(code="invalid_order", reason="amount and leverage out of range")
            if required_margin(amount, leverage) > self._account.balance:
                return Rejection(code="insufficient_funds", reason="insufficient funds")
            instruction = OpenPositionInstruction(
                side=side,
                amount=amount,
                leverage=leverage,
                entry_price=price,
                ai_reasoning="",
                confidence=0.0,
                is_ai_managed=False,
            )
            order_id = await self._submit(
                build_order_request(instruction, self._settings.order_symbol)
            )
            position = self._account.open_position(
                side=side,
                amount=amount,
                leverage=leverage,
                entry_price=price,
                opened_at=self._clock(),
                order_id=order_id,
            )
            self.state.position_version += 1
            self._journal.append("order", {"action": "open", "manual": True, **asdict(position)})
            return position

    async def close_manual(self, position_id: str) -> dict[str, Any] | Rejection:
        """Close any position at the last price, regardless of PnL."""
        async with self._lock:
            position = self._account.get_position(position_id)
            price = self.state.last_price
            if position is None or price is None:
                return Rejection(code="position_not_found", reason="position not found")
            instruction = ClosePositionInstruction(position_id=position_id, exit_price=price)
            await self._submit(
                build_close_request(position, instruction, self._settings.order_symbol)
            )
            order = self._account.close_position(position_id, price, reason="manual_close")
            self.state.position_version += 1
            self._journal.append("order", {**order, "manual": True})
            return order

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _execute(
        self,
        plan: OpenPositionInstruction | ClosePositionInstruction,
        current_ms: int,
        *,
        dry_run: bool,
    ) -> dict[str, Any]:
        """Apply an instruction. In live mode the exchange goes first."""
        if isinstance(plan, OpenPositionInstruction):
            if dry_run:
                return {"action": "open", "status": "dry_run", **asdict(plan)}
            order_id = await self._submit(build_order_request(plan, self._settings.order_symbol))
            position = self._account.apply_open(plan, current_ms, order_id=order_id)
            return {"action": "open", "status": "filled", **asdict(position)}

        position = self._account.get_position(plan.position_id)
        if position is None:
            raise RuntimeError("position_not_found")
        if dry_run:
            return {"action": "close", "status": "dry_run", **asdict(plan)}
        await self._submit(build_close_request(position, plan, self._settings.order_symbol))
        return self._account.close_position(plan.position_id, plan.exit_price, reason="ai_close")

    async def _submit(self, order: OrderRequest) -> str | None:
        if self._exchange is None:
            return None
        placed = await self._exchange.place_order(order)
        return placed.order_id

    def _discard(self, result: CycleResult, started: float, *, cause: str) -> CycleResult:
        self._logger.info("stale_decision_discarded", cause=cause)
        result.warnings.append(REASON_STALE_DECISION)
        return self._finish(result, started, status="stale_discarded")

    def _finish(
        self,
        result: CycleResult,
        started: float,
        *,
        status: str,
        journal: bool = True,
    ) -> CycleResult:
        result.status = status
        result.elapsed_ms = (perf_counter() - started) * 1000
        if journal:
            self._journal.append(
                "cycle_end",
                {"status": status, "elapsed_ms": result.elapsed_ms, "warnings": result.warnings},
            )
        return result


async def run_session(
    session: TradingSession,
    data_client: BinanceDataClient,
    settings: Settings,
    *,
    dry_run: bool = False,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Drive a session with repeating price, candle and analysis tasks."""
    logger = get_logger("btc_trading.session")

    async def analysis() -> None:
        await session.enrich_pending_events()
        cycle = await session.run_analysis_cycle(dry_run=dry_run)
        logger.info(
            "analysis_cycle_completed",
            status=cycle.status,
            elapsed_ms=round(cycle.elapsed_ms, 2),
            orders=len(cycle.orders),
            warnings=cycle.warnings,
        )

    await session.refresh_market(data_client)
    session.set_ai_active(True)
    tasks = [
        RepeatingTask("price_poll", settings.price_poll_sec, lambda: session.poll_price(data_client)),
        RepeatingTask(
            "candle_poll",
            settings.candle_poll_sec,
            lambda: session.refresh_market(data_client),
            run_immediately=False,
        ),
        RepeatingTask("ai_analysis", settings.analysis_interval_sec, analysis),
    ]
    for task in tasks:
        task.start()
    try:
        if stop_event is None:
            await asyncio.gather(*(task.join() for task in tasks))
        else:
            await stop_event.wait()
    finally:
        session.set_ai_active(False)
        for task in tasks:
            task.stop()
        await asyncio.gather(*(task.join() for task in tasks))

