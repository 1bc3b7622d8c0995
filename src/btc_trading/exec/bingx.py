"""BingX perpetual swap order client (HMAC-SHA256 signed)."""

from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from btc_trading.config import Settings
from btc_trading.errors import ExternalServiceError
from btc_trading.types import ClosePositionInstruction, OpenPositionInstruction, Position
from btc_trading.utils.logging import get_logger, log_order_execution

_BINGX_BASE_URL = "https://open-api.bingx.com"
_ORDER_PATH = "/openApi/swap/v2/trade/order"
_BALANCE_PATH = "/openApi/swap/v2/user/balance"


class BingXAPIError(ExternalServiceError):
    """Raised when the exchange rejects or cannot receive a request."""


@dataclass(slots=True, frozen=True)
class OrderRequest:
    """Order parameters decided by the engine."""

    symbol: str
    side: Literal["BUY", "SELL"]
    position_side: Literal["LONG", "SHORT"]
    type: Literal["MARKET"]
    quantity: float
    leverage: float


@dataclass(slots=True, frozen=True)
class OrderResult:
    order_id: str | None
    raw: dict[str, Any]


def build_order_request(
    instruction: OpenPositionInstruction,
    symbol: str,
) -> OrderRequest:
    """Market order opening ``instruction``; quantity in BTC, 6 decimals."""
    if instruction.entry_price <= 0:
        raise ValueError("entry_price_must_be_positive")
    return OrderRequest(
        symbol=symbol,
        side="BUY" if instruction.side == "long" else "SELL",
        position_side="LONG" if instruction.side == "long" else "SHORT",
        type="MARKET",
        quantity=round(instruction.amount / instruction.entry_price, 6),
        leverage=instruction.leverage,
    )


def build_close_request(
    position: Position,
    instruction: ClosePositionInstruction,
    symbol: str,
) -> OrderRequest:
    """Market order reducing ``position`` to zero on its own position side."""
    if position.entry_price <= 0:
        raise ValueError("entry_price_must_be_positive")
    return OrderRequest(
        symbol=symbol,
        side="SELL" if position.side == "long" else "BUY",
        position_side="LONG" if position.side == "long" else "SHORT",
        type="MARKET",
        quantity=round(position.amount / position.entry_price, 6),
        leverage=position.leverage,
    )


def sign_params(params: dict[str, str], secret_key: str) -> str:
    """Return ``query&signature=...`` over the key-sorted parameters."""
    query = "&".join(f"{key}={params[key]}" for key in sorted(params))
    signature = hmac.new(
        secret_key.encode("utf-8"),
        query.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{query}&signature={signature}"


class BingXClient:
    """Signed REST client. Orders are sent once and never retried."""

    def __init__(self, settings: Settings, *, base_url: str = _BINGX_BASE_URL) -> None:
        self._settings = settings
        self._base_url = base_url
        self._logger = get_logger("btc_trading.exec.bingx")

    async def place_order(self, order: OrderRequest) -> OrderResult:
        if not self._settings.bingx_api_key or not self._settings.bingx_secret_key:
            raise BingXAPIError("missing_bingx_credentials")

        params = {
            "symbol": order.symbol,
            "side": order.side,
            "positionSide": order.position_side,
            "type": order.type,
            "quantity": f"{order.quantity:.6f}",
            "clientOrderID": f"ai_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            "timestamp": str(int(time.time() * 1000)),
        }
        body = sign_params(params, self._settings.bingx_secret_key)
        try:
            async with httpx.AsyncClient(timeout=15) as client:
                response = await client.post(
                    f"{self._base_url}{_ORDER_PATH}",
                    headers={
                        "X-BX-APIKEY": self._settings.bingx_api_key,
                        "Content-Type": "application/x-www-form-urlencoded",
                    },
                    content=body,
                )
        except httpx.HTTPError as exc:
            raise BingXAPIError(str(exc)) from exc

        payload = _json_or_empty(response)
        if response.status_code >= 400 or payload.get("code") != 0:
            message = str(payload.get("msg") or f"bingx_status_{response.status_code}")
            log_order_execution(
                self._logger,
                symbol=order.symbol,
                side=order.side,
                quantity=order.quantity,
                status="rejected",
                error=message,
            )
            raise BingXAPIError(message)

        data = payload.get("data") or {}
        order_data = data.get("order", data) if isinstance(data, dict) else {}
        order_id = order_data.get("orderId") if isinstance(order_data, dict) else None
        log_order_execution(
            self._logger,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            order_id=str(order_id) if order_id is not None else None,
            status="filled",
            leverage=order.leverage,
        )
        return OrderResult(
            order_id=str(order_id) if order_id is not None else None,
            raw=payload,
        )

    @retry(
        retry=retry_if_exception_type(BingXAPIError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def check_connection(self) -> bool:
        """Idempotent signed balance query used as a connectivity test."""
        if not self._settings.bingx_api_key or not self._settings.bingx_secret_key:
            return False
        query = sign_params(
            {"timestamp": str(int(time.time() * 1000))},
            self._settings.bingx_secret_key,
        )
        try:
            async with httpx.AsyncClient(timeout=15) as client:
                response = await client.get(
                    f"{self._base_url}{_BALANCE_PATH}?{query}",
                    headers={"X-BX-APIKEY": self._settings.bingx_api_key},
                )
        except httpx.HTTPError as exc:
            raise BingXAPIError(str(exc)) from exc
        if response.status_code >= 500:
            raise BingXAPIError(f"bingx_status_{response.status_code}")
        return _json_or_empty(response).get("code") == 0


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}
