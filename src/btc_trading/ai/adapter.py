"""Translate engine/account state into AI requests and AI replies into actions.

Every model reply is normalized by the active ``PolicyConfig`` first. The
execution gates in ``plan`` then run before any instruction is handed back
to the caller.
"""

from __future__ import annotations

import dataclasses
import math
from typing import Mapping, Protocol, Sequence

from btc_trading.ai.policy import NEUTRAL_ACTIONS, PolicyConfig, risk_tier
from btc_trading.ai.prompts import (
    DECISION_SYSTEM_PROMPT,
    EVENT_SYSTEM_PROMPT,
    build_decision_prompt,
    build_event_prompt,
)
from btc_trading.ai.schemas import (
    AIDecision,
    AIPositionSummary,
    EventAnalysis,
    MarketSnapshot,
    ModelDecision,
    TimeframeSummary,
)
from btc_trading.errors import ExternalServiceError, InvalidModelResponse
from btc_trading.risk.rules import required_margin
from btc_trading.strategy.alignment import ema_alignment_side, rule_based_decision
from btc_trading.types import (
    ClosePositionInstruction,
    EMAEvent,
    OpenPositionInstruction,
    Position,
    Rejection,
    Ticker24h,
)
from btc_trading.utils.logging import get_logger

REASON_INSUFFICIENT_FUNDS = "insufficient funds"
REASON_LOW_CONFIDENCE = "confidence below threshold"
REASON_SERVICE_UNAVAILABLE = "external service unavailable"
REASON_SINGLE_POSITION = "single AI position limit reached"
REASON_LOSS_CLOSE = "closing an AI position at a loss is not allowed"
REASON_POSITION_NOT_FOUND = "position not found"

PlanResult = OpenPositionInstruction | ClosePositionInstruction | Rejection


class RecommendationClient(Protocol):
    """External LLM collaborator."""

    async def complete(self, prompt: str, *, system: str) -> str:
        """Return the raw model reply for ``prompt``."""


def cooldown_rejection(remaining_ms: int) -> Rejection:
    seconds = math.ceil(remaining_ms / 1000)
    return Rejection(code="cooldown", reason=f"cooldown active ({seconds} seconds remaining)")


def normalize_decision(
    raw: ModelDecision,
    snapshot: MarketSnapshot,
    policy: PolicyConfig,
    *,
    source: str = "model",
) -> AIDecision:
    """Apply platform policy to a parsed model decision."""
    reasoning = raw.reasoning
    overridden = False
    side = policy.side_for(raw.action)
    if side is None:
        if raw.action not in NEUTRAL_ACTIONS:
            raise InvalidModelResponse(f"unsupported_action: {raw.action}")
        side = ema_alignment_side(snapshot.primary, snapshot.price)
        overridden = True
        reasoning = (
            f"[override] Model returned '{raw.action}'; action set to "
            f"{policy.action_for(side)} from current EMA alignment. {reasoning}"
        )

    confidence = min(100.0, max(policy.min_confidence, raw.confidence))
    amount = max(snapshot.min_amount, min(raw.amount, snapshot.max_amount))
    return AIDecision(
        action=policy.action_for(side),
        side=side,
        confidence=confidence,
        reported_confidence=raw.confidence,
        amount=amount,
        leverage=policy.clamp_leverage(raw.leverage),
        reasoning=reasoning,
        overridden=overridden,
        source=source,
        timeframe_analysis=raw.timeframe_analysis,
        volume_analysis=raw.volume_analysis,
        confluence_score=raw.confluence_score,
    )


class AIDecisionAdapter:
    """Policy boundary between the engine and the recommendation service."""

    def __init__(
        self,
        client: RecommendationClient,
        policy: PolicyConfig,
        *,
        min_amount: float,
        max_amount: float,
        symbol: str = "BTCUSDT",
        primary_interval: str = "15m",
    ) -> None:
        if min_amount <= 0 or max_amount <= 0:
            raise ValueError("position_amount_bounds_must_be_positive")
        self._client = client
        self._policy = policy
        self._min_amount = min_amount
        self._max_amount = max(min_amount, max_amount)
        self._symbol = symbol
        self._primary_interval = primary_interval
        self._logger = get_logger("btc_trading.ai.adapter")

    @property
    def policy(self) -> PolicyConfig:
        return self._policy

    def build_snapshot(
        self,
        *,
        price: float,
        ticker: Ticker24h | None,
        summaries: Mapping[str, Mapping[str, object]],
        balance: float,
        positions: Sequence[Position],
    ) -> MarketSnapshot:
        """Project market and account state into the model input."""
        timeframes = {
            interval: TimeframeSummary.model_validate({"interval": interval, **summary})
            for interval, summary in summaries.items()
        }
        open_positions = [p for p in positions if p.status == "open"]
        ai_positions = [
            AIPositionSummary(
                id=p.id,
                side=p.side,
                amount=p.amount,
                leverage=p.leverage,
                entry_price=p.entry_price,
                pnl=p.pnl,
                liquidation_price=(
                    p.liquidation_price if math.isfinite(p.liquidation_price) else None
                ),
            )
            for p in open_positions
            if p.is_ai_managed
        ]
        return MarketSnapshot(
            symbol=self._symbol,
            price=price,
            change_pct_24h=ticker.change_pct if ticker else 0.0,
            volume_24h=ticker.volume if ticker else 0.0,
            high_24h=ticker.high if ticker else None,
            low_24h=ticker.low if ticker else None,
            timeframes=timeframes,
            primary_interval=self._primary_interval,
            balance=max(0.0, balance),
            active_positions=len(open_positions),
            ai_positions=ai_positions,
            min_amount=self._min_amount,
            max_amount=self._max_amount,
            risk_tier=risk_tier(balance),
        )

    async def decide(self, snapshot: MarketSnapshot) -> AIDecision | Rejection:
        """Ask the model and normalize its reply; fails closed without fallback."""
        prompt = build_decision_prompt(snapshot, self._policy)
        try:
            text = await self._client.complete(prompt, system=DECISION_SYSTEM_PROMPT)
            raw = ModelDecision.parse_response_text(text)
            return normalize_decision(raw, snapshot, self._policy)
        except ExternalServiceError as exc:
            if not self._policy.has_fallback:
                self._logger.warning(
                    "ai_decision_unavailable",
                    policy=self._policy.name,
                    error=str(exc),
                )
                return Rejection(
                    code="external_service_unavailable",
                    reason=f"{REASON_SERVICE_UNAVAILABLE}: {exc}",
                )
            self._logger.warning(
                "ai_decision_fallback",
                policy=self._policy.name,
                error=str(exc),
            )
            fallback = rule_based_decision(snapshot, self._policy)
            return normalize_decision(fallback, snapshot, self._policy, source="fallback")

    async def analyze_event(self, event: EMAEvent, ticker: Ticker24h | None) -> EMAEvent:
        """Return ``event`` enriched with model commentary.

        Failures keep the event, marked NEUTRAL with confidence 0 and an error.
        """
        error: str | None = None
        try:
            text = await self._client.complete(
                build_event_prompt(event, ticker),
                system=EVENT_SYSTEM_PROMPT,
            )
            analysis = EventAnalysis.parse_response_text(text)
        except ExternalServiceError as exc:
            error = str(exc)
            analysis = EventAnalysis.neutral_default(error)
            self._logger.warning("ema_event_analysis_failed", event_id=event.id, error=error)

        return dataclasses.replace(
            event,
            analysis=analysis.reasoning,
            recommendation=analysis.recommendation,
            confidence=analysis.confidence,
            error=error,
        )

    def plan(
        self,
        decision: AIDecision,
        *,
        balance: float,
        positions: Sequence[Position],
        last_ai_action_at: int | None,
        now_ms: int,
        price: float,
    ) -> PlanResult:
        """Pick the action a decision implies: reverse-close or open."""
        ai_open = [p for p in positions if p.status == "open" and p.is_ai_managed]
        opposite = [p for p in ai_open if p.side != decision.side]
        if opposite:
            return self.plan_close(
                opposite[0],
                confidence=decision.confidence,
                price=price,
                last_ai_action_at=last_ai_action_at,
                now_ms=now_ms,
            )
        if ai_open and self._policy.single_position_only:
            return Rejection(code="single_position", reason=REASON_SINGLE_POSITION)
        return self.plan_open(
            decision,
            balance=balance,
            positions=positions,
            last_ai_action_at=last_ai_action_at,
            now_ms=now_ms,
            price=price,
        )

    def plan_open(
        self,
        decision: AIDecision,
        *,
        balance: float,
        positions: Sequence[Position],
        last_ai_action_at: int | None,
        now_ms: int,
        price: float,
    ) -> OpenPositionInstruction | Rejection:
        if decision.confidence < self._policy.execute_min_confidence:
            return Rejection(code="low_confidence", reason=REASON_LOW_CONFIDENCE)

        remaining = self._cooldown_remaining(last_ai_action_at, now_ms)
        if remaining > 0:
            return cooldown_rejection(remaining)

        if self._policy.single_position_only and any(
            p.status == "open" and p.is_ai_managed for p in positions
        ):
            return Rejection(code="single_position", reason=REASON_SINGLE_POSITION)

        amount = decision.amount
        if required_margin(amount, decision.leverage) > balance:
            if not self._policy.scale_to_balance:
                return Rejection(code="insufficient_funds", reason=REASON_INSUFFICIENT_FUNDS)
            amount = max(0.0, balance) * decision.leverage * self._policy.scale_fraction
            if amount < max(self._policy.min_order_amount, 0.0) or amount <= 0:
                return Rejection(code="insufficient_funds", reason=REASON_INSUFFICIENT_FUNDS)
            self._logger.info(
                "ai_amount_scaled_to_balance",
                requested=decision.amount,
                scaled=amount,
                balance=balance,
            )

        return OpenPositionInstruction(
            side=decision.side,
            amount=amount,
            leverage=decision.leverage,
            entry_price=price,
            ai_reasoning=decision.reasoning,
            confidence=decision.confidence,
        )

    def plan_close(
        self,
        position: Position,
        *,
        confidence: float,
        price: float,
        last_ai_action_at: int | None,
        now_ms: int,
    ) -> ClosePositionInstruction | Rejection:
        if position.status != "open":
            return Rejection(code="position_not_found", reason=REASON_POSITION_NOT_FOUND)
        if position.pnl <= 0 and not self._policy.allow_loss_close:
            return Rejection(code="loss_close", reason=REASON_LOSS_CLOSE)
        if confidence < self._policy.execute_min_confidence:
            return Rejection(code="low_confidence", reason=REASON_LOW_CONFIDENCE)
        remaining = self._cooldown_remaining(last_ai_action_at, now_ms)
        if remaining > 0:
            return cooldown_rejection(remaining)
        return ClosePositionInstruction(position_id=position.id, exit_price=price)

    def _cooldown_remaining(self, last_ai_action_at: int | None, now_ms: int) -> int:
        if last_ai_action_at is None:
            return 0
        return max(0, self._policy.cooldown_ms - (now_ms - last_ai_action_at))
