from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest

from btc_trading.ai.adapter import AIDecisionAdapter
from btc_trading.ai.openai_client import OpenAIAPIError, OpenAIClient
from btc_trading.ai.policy import BINGX_POLICY, SIMULATED_POLICY
from btc_trading.ai.schemas import AIDecision
from btc_trading.config import Settings
from btc_trading.types import Rejection

_BULLISH = {
    "close": 50_000.0,
    "ema10": 50_200.0,
    "ema55": 49_000.0,
    "macd_histogram": 15.0,
    "trend": "UP",
}


def _reply_with(monkeypatch: pytest.MonkeyPatch, **response_kwargs: Any) -> None:
    async def _post(self: httpx.AsyncClient, url: str, **kwargs: Any) -> httpx.Response:
        return httpx.Response(200, request=httpx.Request("POST", url), **response_kwargs)

    monkeypatch.setattr(httpx.AsyncClient, "post", _post)


def _client(tmp_path: Path) -> OpenAIClient:
    return OpenAIClient(Settings(journal_dir=tmp_path, openai_api_key="sk-test"))


def test_complete_returns_message_content(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _reply_with(monkeypatch, json={"choices": [{"message": {"content": '{"action":"long"}'}}]})
    text = asyncio.run(_client(tmp_path).complete("prompt", system="system"))
    assert text == '{"action":"long"}'


def test_non_json_body_raises_service_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _reply_with(monkeypatch, text="<html>gateway</html>")
    with pytest.raises(OpenAIAPIError, match="openai_non_json_body"):
        asyncio.run(_client(tmp_path).complete("prompt", system="system"))


def test_non_object_body_raises_service_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _reply_with(monkeypatch, json=["unexpected"])
    with pytest.raises(OpenAIAPIError, match="openai_unexpected_payload"):
        asyncio.run(_client(tmp_path).complete("prompt", system="system"))


def test_missing_api_key_raises_service_error(tmp_path: Path) -> None:
    client = OpenAIClient(Settings(journal_dir=tmp_path, openai_api_key=""))
    with pytest.raises(OpenAIAPIError, match="missing_openai_api_key"):
        asyncio.run(client.complete("prompt", system="system"))


def _decide(tmp_path: Path, policy: Any) -> AIDecision | Rejection:
    adapter = AIDecisionAdapter(_client(tmp_path), policy, min_amount=11.73, max_amount=15.0)
    snapshot = adapter.build_snapshot(
        price=50_000.0,
        ticker=None,
        summaries={"15m": _BULLISH},
        balance=500.0,
        positions=[],
    )
    return asyncio.run(adapter.decide(snapshot))


def test_gateway_page_fails_closed_without_fallback(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _reply_with(monkeypatch, text="<html>gateway</html>")
    result = _decide(tmp_path, BINGX_POLICY)

    assert isinstance(result, Rejection)
    assert result.code == "external_service_unavailable"


def test_gateway_page_uses_rule_fallback_when_allowed(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _reply_with(monkeypatch, text="<html>gateway</html>")
    result = _decide(tmp_path, SIMULATED_POLICY)

    assert isinstance(result, AIDecision)
    assert result.source == "fallback"
