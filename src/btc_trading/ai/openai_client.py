"""OpenAI chat-completions client."""

from __future__ import annotations

import time
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from btc_trading.config import Settings
from btc_trading.errors import ExternalServiceError
from btc_trading.utils.logging import get_logger, log_llm_call

_OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIAPIError(ExternalServiceError):
    """Raised when API transport/request fails."""


class OpenAIClient:
    """Thin async client for the chat completion endpoint.

    Completions are trading-affecting and are never retried; only the
    connectivity check is.
    """

    def __init__(self, settings: Settings, *, base_url: str = _OPENAI_BASE_URL) -> None:
        self._settings = settings
        self._base_url = base_url
        self._logger = get_logger("btc_trading.ai.openai_client")

    @property
    def model(self) -> str:
        return self._settings.openai_model

    async def complete(self, prompt: str, *, system: str) -> str:
        """Send one prompt and return the assistant message content."""
        if not self._settings.openai_api_key:
            raise OpenAIAPIError("missing_openai_api_key")

        payload = {
            "model": self._settings.openai_model,
            "temperature": self._settings.openai_temperature,
            "max_tokens": self._settings.openai_max_tokens,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self._settings.openai_timeout) as client:
                response = await client.post(
                    f"{self._base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            log_llm_call(
                self._logger,
                model=self.model,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                reason=str(exc),
            )
            raise OpenAIAPIError(str(exc)) from exc

        try:
            body = response.json()
        except ValueError as exc:
            log_llm_call(
                self._logger,
                model=self.model,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                reason="non_json_body",
            )
            raise OpenAIAPIError("openai_non_json_body") from exc

        log_llm_call(
            self._logger,
            model=self.model,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
        )
        return _extract_message_content(body)

    @retry(
        retry=retry_if_exception_type(OpenAIAPIError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def check_connection(self) -> bool:
        """Idempotent credential check against the models listing."""
        if not self._settings.openai_api_key:
            return False
        try:
            async with httpx.AsyncClient(timeout=self._settings.openai_timeout) as client:
                response = await client.get(f"{self._base_url}/models", headers=self._headers())
        except httpx.HTTPError as exc:
            raise OpenAIAPIError(str(exc)) from exc
        if response.status_code >= 500:
            raise OpenAIAPIError(f"openai_status_{response.status_code}")
        return response.status_code == 200

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key}",
            "Content-Type": "application/json",
        }


def _extract_message_content(payload: Any) -> str:
    """Read assistant content from a chat completion payload."""
    if not isinstance(payload, dict):
        raise OpenAIAPIError("openai_unexpected_payload")
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return "{}"
    first = choices[0]
    if not isinstance(first, dict):
        return "{}"
    message = first.get("message")
    if not isinstance(message, dict):
        return "{}"
    content = message.get("content")
    if isinstance(content, str):
        return content
    return "{}"
