from __future__ import annotations

from btc_trading.signals.ema_events import (
    EMAEventDetector,
    EMASample,
    describe_event,
    promote_to_mark,
)
from btc_trading.types import EMAEvent


def _sample(price: float, ts: int, ema55: float = 100.0, ema200: float = 50.0) -> EMASample:
    return EMASample(price=price, ema55=ema55, ema200=ema200, timestamp=ts)


def test_first_sample_only_stores_state() -> None:
    detector = EMAEventDetector()
    assert detector.observe(_sample(101.0, 1_000)) == []
    assert detector.previous_sample is not None


def test_cross_above_fires_once() -> None:
    detector = EMAEventDetector()
    detector.observe(_sample(99.0, 1_000))
    events = detector.observe(_sample(101.0, 2_000))
    assert len(events) == 1
    event = events[0]
    assert event.ema_kind == "ema55"
    assert event.kind == "cross_above"
    assert event.id == "ema55_2000"
    assert event.ema_value == 100.0


def test_cooldown_suppresses_repeat_events() -> None:
    detector = EMAEventDetector(cooldown_ms=300_000)
    detector.observe(_sample(99.0, 1_000))
    assert len(detector.observe(_sample(101.0, 2_000))) == 1
    assert detector.observe(_sample(99.0, 62_000)) == []
    assert detector.cooldown_remaining_ms("ema55", 62_000) == 240_000

    events = detector.observe(_sample(101.0, 302_000))
    assert [e.kind for e in events] == ["cross_above"]


def test_touch_from_above_takes_precedence() -> None:
    detector = EMAEventDetector(tolerance=0.002)
    detector.observe(_sample(101.0, 1_000))
    events = detector.observe(_sample(100.1, 2_000))
    assert [e.kind for e in events] == ["touch_from_above"]


def test_touch_from_below() -> None:
    detector = EMAEventDetector(tolerance=0.002)
    detector.observe(_sample(98.0, 1_000))
    events = detector.observe(_sample(99.9, 2_000))
    assert [e.kind for e in events] == ["touch_from_below"]


def test_each_ema_fires_independently() -> None:
    detector = EMAEventDetector()
    detector.observe(_sample(95.0, 1_000, ema55=100.0, ema200=97.0))
    events = detector.observe(_sample(105.0, 2_000, ema55=100.0, ema200=97.0))
    assert sorted(e.ema_kind for e in events) == ["ema200", "ema55"]


def test_drain_pending_empties_queue() -> None:
    detector = EMAEventDetector()
    detector.observe(_sample(99.0, 1_000))
    detector.observe(_sample(101.0, 2_000))
    assert len(detector.drain_pending()) == 1
    assert detector.drain_pending() == []


def _enriched(recommendation: str | None, confidence: float | None) -> EMAEvent:
    return EMAEvent(
        id="ema55_2000",
        ema_kind="ema55",
        kind="cross_above",
        price=101.0,
        ema_value=100.0,
        timestamp=2_000,
        recommendation=recommendation,  # type: ignore[arg-type]
        confidence=confidence,
    )


def test_promote_to_mark_requires_conviction() -> None:
    mark = promote_to_mark(_enriched("LONG", 71.0))
    assert mark is not None
    assert mark.type == "LONG"
    assert mark.id == "ema-ema55-2000"
    assert promote_to_mark(_enriched("LONG", 70.0)) is None
    assert promote_to_mark(_enriched("NEUTRAL", 95.0)) is None
    assert promote_to_mark(_enriched(None, None)) is None


def test_describe_event() -> None:
    assert "crossed above EMA 55" in describe_event(_enriched(None, None))
