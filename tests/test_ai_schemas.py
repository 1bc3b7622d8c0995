from __future__ import annotations

import pytest
from pydantic import ValidationError

from btc_trading.ai.schemas import EventAnalysis, MarketSnapshot, ModelDecision
from btc_trading.errors import InvalidModelResponse


def test_model_decision_parse_valid_json() -> None:
    raw = """
    {
      "action": " LONG ",
      "confidence": 82,
      "amount": 14,
      "leverage": 20,
      "reasoning": "EMA stack bullish on 1h and 4h",
      "timeframeAnalysis": {"1h": "bullish", "4h": "bullish"},
      "volumeAnalysis": "rising",
      "confluenceScore": 7.5
    }
    """
    decision = ModelDecision.parse_response_text(raw)
    assert decision.action == "long"
    assert decision.confidence == 82
    assert decision.timeframe_analysis == {"1h": "bullish", "4h": "bullish"}
    assert decision.volume_analysis == "rising"
    assert decision.confluence_score == 7.5


def test_model_decision_parse_fenced_json() -> None:
    raw = (
        "Here is my call:\n```json\n"
        '{"action":"sell","confidence":71,"amount":12,"leverage":3,"reasoning":"fade"}\n'
        "```"
    )
    decision = ModelDecision.parse_response_text(raw)
    assert decision.action == "sell"
    assert decision.leverage == 3


def test_model_decision_missing_fields_raise() -> None:
    with pytest.raises(InvalidModelResponse, match="schema_validation_error"):
        ModelDecision.parse_response_text('{"action":"long","confidence":"bad"}')


def test_model_decision_non_json_raises() -> None:
    with pytest.raises(InvalidModelResponse):
        ModelDecision.parse_response_text("hello world")


def test_event_analysis_parse() -> None:
    raw = (
        '{"reasoning":"bounce off support","recommendation":"long",'
        '"confidence":78,"keyPoints":["volume up","rsi 45"]}'
    )
    analysis = EventAnalysis.parse_response_text(raw)
    assert analysis.recommendation == "LONG"
    assert analysis.key_points == ["volume up", "rsi 45"]


def test_event_analysis_invalid_recommendation_raises() -> None:
    with pytest.raises(InvalidModelResponse):
        EventAnalysis.parse_response_text(
            '{"reasoning":"x","recommendation":"moon","confidence":50}'
        )


def test_event_analysis_neutral_default() -> None:
    analysis = EventAnalysis.neutral_default("timeout")
    assert analysis.recommendation == "NEUTRAL"
    assert analysis.confidence == 0.0
    assert "timeout" in analysis.reasoning


def test_market_snapshot_rejects_bad_symbol() -> None:
    with pytest.raises(ValidationError):
        MarketSnapshot(symbol="btc/usdt", price=50_000, balance=100, min_amount=1, max_amount=2)
