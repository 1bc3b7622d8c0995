"""EMA touch/cross detection with a per-EMA cooldown."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from btc_trading.types import EMAEvent, EMAEventKind, EMAKind, TradingMark
from btc_trading.utils.logging import get_logger, log_ema_event

TOUCH_TOLERANCE = 0.002
EVENT_COOLDOWN_MS = 300_000
MARK_MIN_CONFIDENCE = 70.0
EMA_KINDS: tuple[EMAKind, ...] = ("ema55", "ema200")


@dataclass(slots=True, frozen=True)
class EMASample:
    """Live price with the EMA values observed at the same instant."""

    price: float
    ema55: float
    ema200: float
    timestamp: int

    def ema_value(self, kind: EMAKind) -> float:
        return self.ema55 if kind == "ema55" else self.ema200


class EMAEventDetector:
    """Turn successive samples into discrete touch/cross events.

    Touch is checked before cross and at most one event fires per EMA per
    sample. After an event fires for an EMA, that EMA stays silent for
    ``cooldown_ms`` of sample time.
    """

    def __init__(
        self,
        *,
        tolerance: float = TOUCH_TOLERANCE,
        cooldown_ms: int = EVENT_COOLDOWN_MS,
        kinds: tuple[EMAKind, ...] = EMA_KINDS,
    ) -> None:
        if tolerance <= 0:
            raise ValueError("tolerance_must_be_positive")
        if cooldown_ms < 0:
            raise ValueError("cooldown_must_be_non_negative")
        self._tolerance = tolerance
        self._cooldown_ms = cooldown_ms
        self._kinds = kinds
        self._previous: EMASample | None = None
        self._last_fired: dict[EMAKind, int] = {}
        self._pending: deque[EMAEvent] = deque()
        self._logger = get_logger("btc_trading.signals.ema_events")

    @property
    def previous_sample(self) -> EMASample | None:
        return self._previous

    def observe(self, sample: EMASample) -> list[EMAEvent]:
        """Feed one sample; returns the events it fired (also queued)."""
        previous = self._previous
        self._previous = sample
        if previous is None:
            return []

        fired: list[EMAEvent] = []
        for kind in self._kinds:
            if self.cooldown_remaining_ms(kind, sample.timestamp) > 0:
                continue
            event = self._detect(previous, sample, kind)
            if event is None:
                continue
            self._last_fired[kind] = sample.timestamp
            self._pending.append(event)
            fired.append(event)
            log_ema_event(
                self._logger,
                ema_kind=event.ema_kind,
                kind=event.kind,
                price=event.price,
                ema_value=event.ema_value,
            )
        return fired

    def cooldown_remaining_ms(self, kind: EMAKind, now_ms: int) -> int:
        last = self._last_fired.get(kind)
        if last is None:
            return 0
        return max(0, self._cooldown_ms - (now_ms - last))

    def drain_pending(self) -> list[EMAEvent]:
        """Hand queued events to the enrichment step."""
        events = list(self._pending)
        self._pending.clear()
        return events

    def _detect(
        self,
        previous: EMASample,
        current: EMASample,
        kind: EMAKind,
    ) -> EMAEvent | None:
        prev_ema = previous.ema_value(kind)
        curr_ema = current.ema_value(kind)
        if prev_ema <= 0 or curr_ema <= 0:
            return None

        prev_distance = abs(previous.price - prev_ema) / prev_ema
        curr_distance = abs(current.price - curr_ema) / curr_ema

        direction: EMAEventKind | None = None
        if curr_distance <= self._tolerance and prev_distance > self._tolerance:
            direction = "touch_from_above" if previous.price > prev_ema else "touch_from_below"
        else:
            prev_above = previous.price > prev_ema
            curr_above = current.price > curr_ema
            if prev_above != curr_above:
                direction = "cross_above" if curr_above else "cross_below"

        if direction is None:
            return None
        return EMAEvent(
            id=f"{kind}_{current.timestamp}",
            ema_kind=kind,
            kind=direction,
            price=current.price,
            ema_value=curr_ema,
            timestamp=current.timestamp,
        )


def describe_event(event: EMAEvent) -> str:
    """Human readable one-liner used in prompts and history."""
    ema_name = "EMA 55" if event.ema_kind == "ema55" else "EMA 200"
    descriptions = {
        "touch_from_above": f"Price touched {ema_name} from above (possible support)",
        "touch_from_below": f"Price touched {ema_name} from below (possible resistance)",
        "cross_above": f"Price crossed above {ema_name} (possible bullish signal)",
        "cross_below": f"Price crossed below {ema_name} (possible bearish signal)",
    }
    return descriptions[event.kind]


def promote_to_mark(
    event: EMAEvent,
    min_confidence: float = MARK_MIN_CONFIDENCE,
) -> TradingMark | None:
    """Turn an enriched event into a chart mark when conviction is high enough."""
    if event.recommendation not in ("LONG", "SHORT"):
        return None
    if event.confidence is None or event.confidence <= min_confidence:
        return None
    return TradingMark(
        timestamp=event.timestamp,
        type=event.recommendation,
        price=event.price,
        id=f"ema-{event.ema_kind}-{event.timestamp}",
    )
