"""ExchangeGateway: venue HTTP client with fixed-point conversion and retry.

Translates engine-level decimal order requests into venue calls and back:
- All quantities travel as integers scaled by 10^18 (decimal strings).
- Every outbound call runs inside a bounded retry loop: 3 attempts, backoff
  1s then 2s. HTTP failures retry on 429 and 5xx status codes; other
  errors retry when their message matches the transient vocabulary
  (network, timeout, connection reset, DNS, rate limit).
- Venue payloads are validated into ``OrderResponse`` before reaching the
  engine.

Conversion goes through ``decimal.Decimal`` with the default 28-digit
context. Amounts needing more significant digits once scaled (very large
sizes, or very small fractions) are rounded by the context. This is an
accepted limitation of the venue's fixed-point format.

The venue exposes no idempotency key, so a ``place_order`` retried after a
timeout may submit twice. This is an accepted trade-off.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from twapbot.errors import GatewayError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_API_URL = "https://dapi.api.sui-prod.bluefin.io"

DECIMALS = 18
SCALE = Decimal(10) ** DECIMALS


class OrderResponse(BaseModel):
    """Typed venue order response. Quantities are in human units."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    order_id: str = Field(validation_alias=AliasChoices("order_id", "orderId"))
    status: str
    filled_size: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("filled_size", "filledSize"),
    )
    average_price: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("average_price", "averagePrice"),
    )


def to_venue_units(amount: str | Decimal) -> str:
    """Convert a human decimal amount to the venue's 10^18 integer string.

    Raises
    ------
    ValueError
        If ``amount`` is negative or not a finite number.
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount}") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid amount: {amount}")
    return str(int((value * SCALE).to_integral_value(rounding=ROUND_FLOOR)))


def from_venue_units(raw: str | int) -> str:
    """Convert a venue 10^18 integer back to a human decimal string."""
    try:
        scaled = int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid venue amount: {raw}") from exc
    value = Decimal(scaled) / SCALE
    # normalize() would print 1E+3 for 1000
    return format(value.normalize(), "f")


class ExchangeGateway:
    """Stateless request executor for the perpetuals venue.

    Parameters
    ----------
    wallet : Wallet
        Provides ``address()`` and ``sign(bytes)`` for authenticated calls.
    api_url : str | None
        Venue base URL. Defaults to the Bluefin production endpoint.
    client : httpx.AsyncClient | None
        Pre-built client (tests inject one with ``httpx.MockTransport``).
    timeout_seconds : float
        Per-request timeout when the gateway builds its own client.
    """

    MAX_ATTEMPTS: int = 3
    INITIAL_BACKOFF_SECONDS: float = 1.0

    RETRYABLE_MARKERS: tuple[str, ...] = (
        "network",
        "timeout",
        "timed out",
        "econnreset",
        "connection reset",
        "etimedout",
        "enotfound",
        "name resolution",
        "rate limit",
        "too many requests",
    )
    RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        wallet: Any,
        api_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._wallet = wallet
        self._api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self._api_url,
            timeout=timeout_seconds,
        )
        logger.info("exchange_gateway_init", api_url=self._api_url)

    async def __aenter__(self) -> ExchangeGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        await self._client.aclose()

    async def place_order(
        self,
        pair: str,
        side: str,
        size: str | Decimal,
        price: str | Decimal | None = None,
        order_type: str = "limit",
    ) -> OrderResponse:
        """Submit an order. Size and price are human decimal amounts.

        Raises
        ------
        ValueError
            If size or price is negative or non-numeric.
        GatewayError
            If the venue rejects the order, or retries are exhausted.
        """
        logger.info(
            "placing_order",
            pair=pair,
            side=side,
            order_type=order_type,
            size=str(size),
            price=None if price is None else str(price),
        )

        payload: dict[str, str] = {
            "pair": pair,
            "side": side,
            "size": to_venue_units(size),
            "orderType": order_type,
        }
        if price is not None:
            payload["price"] = to_venue_units(price)

        async def _call() -> OrderResponse:
            data = await self._request("POST", "/orders", payload)
            return self._parse_order(
                data,
                default_order_id=f"order_{int(time.time() * 1000)}",
                default_status="pending",
            )

        return await self.execute_with_retry(_call)

    async def get_order_status(self, order_id: str) -> OrderResponse:
        """Fetch the venue's current view of an order."""

        async def _call() -> OrderResponse:
            data = await self._request("GET", f"/orders/{order_id}")
            return self._parse_order(
                data, default_order_id=order_id, default_status="unknown",
            )

        return await self.execute_with_retry(_call)

    async def cancel_order(self, order_id: str) -> None:
        """Cancel an open order."""

        async def _call() -> None:
            await self._request("DELETE", f"/orders/{order_id}")

        await self.execute_with_retry(_call)
        logger.info("order_cancelled", order_id=order_id)

    async def get_market_price(self, pair: str) -> str:
        """Return the current market price for ``pair`` as a decimal string.

        Raises
        ------
        GatewayError
            If the venue response carries no ``price`` field.
        """

        async def _call() -> str:
            data = await self._request("GET", f"/markets/{pair}/price")
            raw = data.get("price") if isinstance(data, dict) else None
            if not raw:
                raise GatewayError("Failed to get market price")
            try:
                return from_venue_units(raw)
            except ValueError as exc:
                raise GatewayError(f"Failed to get market price: {exc}") from exc

        return await self.execute_with_retry(_call)

    async def execute_with_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` with bounded exponential backoff on transient errors.

        Non-retryable errors are raised immediately without sleeping. After
        ``MAX_ATTEMPTS`` the last error is raised.
        """
        for attempt in range(self.MAX_ATTEMPTS):
            try:
                return await fn()
            except Exception as exc:
                if not self.is_retryable(exc) or attempt == self.MAX_ATTEMPTS - 1:
                    raise
                delay = self.INITIAL_BACKOFF_SECONDS * (2 ** attempt)
                logger.warning(
                    "gateway_retry",
                    attempt=attempt + 1,
                    max_attempts=self.MAX_ATTEMPTS,
                    backoff_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

        # MAX_ATTEMPTS < 1
        raise GatewayError("Retry loop made no attempts")

    @classmethod
    def is_retryable(cls, error: BaseException) -> bool:
        """True for transient failures.

        HTTP failures are classified by status code alone, so a response body
        that happens to mention a marker does not make a 4xx retryable.
        Everything else is matched against the transient-failure vocabulary.
        """
        if isinstance(error, GatewayError) and error.status_code is not None:
            return error.status_code in cls.RETRYABLE_STATUS_CODES
        message = str(error).lower()
        return any(marker in message for marker in cls.RETRYABLE_MARKERS)

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
    ) -> Any:
        body = json.dumps(payload).encode() if payload is not None else b""
        headers = {
            "Content-Type": "application/json",
            **self._auth_headers(method, path, body),
        }
        try:
            response = await self._client.request(
                method, path, content=body or None, headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Exchange API timeout: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise GatewayError(f"Exchange API network error: {exc!r}") from exc

        if not response.is_success:
            raise GatewayError(
                f"Exchange API error: {response.status_code} {response.text}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(f"Exchange API returned invalid JSON: {exc}") from exc

    def _auth_headers(self, method: str, path: str, body: bytes) -> dict[str, str]:
        headers = {"X-Wallet-Address": self._wallet.address()}
        sign = getattr(self._wallet, "sign", None)
        if sign is not None:
            message = method.encode() + b" " + path.encode() + b"\n" + body
            headers["X-Signature"] = base64.b64encode(sign(message)).decode()
        return headers

    @staticmethod
    def _parse_order(
        data: Any,
        default_order_id: str,
        default_status: str,
    ) -> OrderResponse:
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected order response: {data!r}")

        fields: dict[str, Any] = {
            "order_id": data.get("orderId") or default_order_id,
            "status": data.get("status") or default_status,
        }
        try:
            if data.get("filledSize") is not None:
                fields["filled_size"] = from_venue_units(data["filledSize"])
            if data.get("averagePrice") is not None:
                fields["average_price"] = from_venue_units(data["averagePrice"])
            return OrderResponse.model_validate(fields)
        except (ValueError, ValidationError) as exc:
            raise GatewayError(f"Malformed order response: {exc}") from exc
