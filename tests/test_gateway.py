"""Tests for ExchangeGateway -- venue client with conversion and retry.

The venue is simulated with ``httpx.MockTransport``; backoff sleeps are
patched out at ``twapbot.execution.gateway.asyncio.sleep``.
"""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import StubWallet
from twapbot.errors import GatewayError
from twapbot.execution.gateway import (
    ExchangeGateway,
    OrderResponse,
    from_venue_units,
    to_venue_units,
)

BASE_URL = "https://venue.test"


def _make_gateway(handler) -> ExchangeGateway:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return ExchangeGateway(StubWallet("0xwallet"), api_url=BASE_URL, client=client)


class TestVenueUnits:
    """Conversion to and from the 10^18 fixed-point representation."""

    def test_to_venue_units(self) -> None:
        assert to_venue_units("1") == "1000000000000000000"
        assert to_venue_units("83.33333333") == "83333333330000000000"
        assert to_venue_units(Decimal("0.5")) == "500000000000000000"
        assert to_venue_units("0") == "0"

    def test_to_venue_units_floors_sub_unit_digits(self) -> None:
        assert to_venue_units("0.0000000000000000019") == "1"

    @pytest.mark.parametrize("bad", ["-1", "abc", "", "NaN", "Infinity"])
    def test_to_venue_units_rejects_invalid(self, bad: str) -> None:
        with pytest.raises(ValueError, match="Invalid amount"):
            to_venue_units(bad)

    def test_from_venue_units(self) -> None:
        assert from_venue_units("1010000000000000000") == "1.01"
        assert from_venue_units("1000000000000000000000") == "1000"
        assert from_venue_units(0) == "0"

    def test_from_venue_units_rejects_non_integer(self) -> None:
        with pytest.raises(ValueError):
            from_venue_units("1.5")


class TestPlaceOrder:
    """place_order scales the payload and validates the response."""

    @pytest.mark.asyncio
    async def test_payload_and_response(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["headers"] = request.headers
            return httpx.Response(
                200,
                json={
                    "orderId": "abc-1",
                    "status": "filled",
                    "filledSize": "83333333330000000000",
                    "averagePrice": "1005000000000000000",
                },
            )

        gw = _make_gateway(handler)
        resp = await gw.place_order("BLUE-PERP", "buy", "83.33333333", "1.01", "limit")

        assert seen["method"] == "POST"
        assert seen["path"] == "/orders"
        assert seen["body"] == {
            "pair": "BLUE-PERP",
            "side": "buy",
            "size": "83333333330000000000",
            "orderType": "limit",
            "price": "1010000000000000000",
        }
        assert seen["headers"]["X-Wallet-Address"] == "0xwallet"
        assert "X-Signature" in seen["headers"]

        assert isinstance(resp, OrderResponse)
        assert resp.order_id == "abc-1"
        assert resp.status == "filled"
        assert resp.filled_size == Decimal("83.33333333")
        assert resp.average_price == Decimal("1.005")
        await gw.close()

    @pytest.mark.asyncio
    async def test_market_order_omits_price(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"orderId": "m-1", "status": "pending"})

        gw = _make_gateway(handler)
        await gw.place_order("BLUE-PERP", "buy", "1", order_type="market")
        assert "price" not in seen["body"]
        await gw.close()

    @pytest.mark.asyncio
    async def test_missing_fields_get_defaults(self) -> None:
        gw = _make_gateway(lambda request: httpx.Response(200, json={}))
        resp = await gw.place_order("BLUE-PERP", "buy", "1", "1")
        assert resp.order_id.startswith("order_")
        assert resp.status == "pending"
        assert resp.filled_size is None
        assert resp.average_price is None
        await gw.close()

    @pytest.mark.asyncio
    async def test_negative_size_rejected_before_request(self) -> None:
        handler = AsyncMock()
        gw = _make_gateway(handler)
        with pytest.raises(ValueError):
            await gw.place_order("BLUE-PERP", "buy", "-1", "1")
        handler.assert_not_called()
        await gw.close()

    @pytest.mark.asyncio
    async def test_malformed_fill_is_gateway_error(self) -> None:
        gw = _make_gateway(
            lambda request: httpx.Response(
                200, json={"orderId": "x", "status": "filled", "filledSize": "lots"}
            )
        )
        with pytest.raises(GatewayError, match="Malformed order response"):
            await gw.place_order("BLUE-PERP", "buy", "1", "1")
        await gw.close()


class TestOtherOperations:
    @pytest.mark.asyncio
    async def test_get_order_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/orders/abc-1"
            return httpx.Response(200, json={"filledSize": "2000000000000000000"})

        gw = _make_gateway(handler)
        resp = await gw.get_order_status("abc-1")
        assert resp.order_id == "abc-1"
        assert resp.status == "unknown"
        assert resp.filled_size == Decimal("2")
        await gw.close()

    @pytest.mark.asyncio
    async def test_cancel_order(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(f"{request.method} {request.url.path}")
            return httpx.Response(204)

        gw = _make_gateway(handler)
        assert await gw.cancel_order("abc-1") is None
        assert seen == ["DELETE /orders/abc-1"]
        await gw.close()

    @pytest.mark.asyncio
    async def test_get_market_price(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/markets/BLUE-PERP/price"
            return httpx.Response(200, json={"price": "1000000000000000000"})

        gw = _make_gateway(handler)
        assert await gw.get_market_price("BLUE-PERP") == "1"
        await gw.close()

    @pytest.mark.asyncio
    async def test_get_market_price_missing_field(self) -> None:
        gw = _make_gateway(lambda request: httpx.Response(200, json={"last": "1"}))
        with pytest.raises(GatewayError, match="Failed to get market price"):
            await gw.get_market_price("BLUE-PERP")
        await gw.close()

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self) -> None:
        gw = _make_gateway(lambda request: httpx.Response(200, json={"price": "1"}))
        async with gw:
            pass
        assert gw._client.is_closed


class TestRetryPolicy:
    """Bounded exponential backoff on transient errors only."""

    @pytest.mark.asyncio
    async def test_two_retryable_failures_then_success(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(503, text="Service Unavailable")
            return httpx.Response(200, json={"price": "2000000000000000000"})

        gw = _make_gateway(handler)
        with patch(
            "twapbot.execution.gateway.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            price = await gw.get_market_price("BLUE-PERP")

        assert price == "2"
        assert calls["n"] == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]
        await gw.close()

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(400, text="insufficient balance")

        gw = _make_gateway(handler)
        with patch(
            "twapbot.execution.gateway.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            with pytest.raises(GatewayError, match="400") as exc_info:
                await gw.place_order("BLUE-PERP", "buy", "1", "1")

        assert exc_info.value.status_code == 400
        assert calls["n"] == 1
        mock_sleep.assert_not_awaited()
        await gw.close()

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            raise httpx.ConnectError("connection refused", request=request)

        gw = _make_gateway(handler)
        with patch(
            "twapbot.execution.gateway.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            with pytest.raises(GatewayError, match="network error"):
                await gw.get_order_status("abc")

        assert calls["n"] == ExchangeGateway.MAX_ATTEMPTS
        assert mock_sleep.await_count == ExchangeGateway.MAX_ATTEMPTS - 1
        await gw.close()

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ReadTimeout("read timed out", request=request)
            return httpx.Response(204)

        gw = _make_gateway(handler)
        with patch("twapbot.execution.gateway.asyncio.sleep", new_callable=AsyncMock):
            await gw.cancel_order("abc")
        assert calls["n"] == 2
        await gw.close()

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("Network unreachable", True),
            ("request TIMEOUT", True),
            ("ECONNRESET by peer", True),
            ("getaddrinfo ENOTFOUND venue", True),
            ("Rate limit exceeded", True),
            ("Exchange API network error: ConnectError()", True),
            ("Invalid amount: -1", False),
        ],
    )
    def test_is_retryable(self, message: str, expected: bool) -> None:
        assert ExchangeGateway.is_retryable(Exception(message)) is expected

    @pytest.mark.parametrize(
        "status_code, body, expected",
        [
            (502, "Bad Gateway", True),
            (503, "Service Unavailable", True),
            (429, "Too Many Requests", True),
            (400, "insufficient balance", False),
            (400, '{"error":"size below minimum 5000"}', False),
            (404, "network not found", False),
        ],
    )
    def test_http_errors_classified_by_status(
        self, status_code: int, body: str, expected: bool
    ) -> None:
        error = GatewayError(
            f"Exchange API error: {status_code} {body}", status_code=status_code
        )
        assert ExchangeGateway.is_retryable(error) is expected

    @pytest.mark.asyncio
    async def test_client_error_with_marker_in_body_not_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(400, json={"error": "size below minimum 5000"})

        gw = _make_gateway(handler)
        with patch(
            "twapbot.execution.gateway.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            with pytest.raises(GatewayError, match="5000") as exc_info:
                await gw.place_order("BLUE-PERP", "buy", Decimal("10"), Decimal("1"))

        assert exc_info.value.status_code == 400
        assert calls["n"] == 1
        mock_sleep.assert_not_awaited()
        await gw.close()
