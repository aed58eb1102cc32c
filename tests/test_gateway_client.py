"""Tests for the gateway HTTP client against a mocked transport."""

import json
from decimal import Decimal

import httpx
import pytest

from finsync.services.gateway import GatewayClient, GatewayError, pick_current_balance, GatewayBalance

API = "https://api.gateway.test"
TOKEN_URL = "https://auth.gateway.test/token"


def _txn(txn_id: str, indicator: str = "Debit", value: str = "5.000") -> dict:
    return {
        "transactionId": txn_id,
        "accountId": "acc-1",
        "providerId": "NBB",
        "transactionDescription": "CARREFOUR CITY CENTRE",
        "creditDebitIndicator": indicator,
        "amount": {"value": value, "currency": "BHD"},
        "bookingDateTime": "2026-03-10T09:30:00Z",
        "category": {"name": "Groceries", "group": "Expense"},
        "merchant": {"name": "Carrefour", "logo": "https://logo.example/c.png"},
    }


def _client(handler) -> GatewayClient:
    return GatewayClient(
        client_id="cid",
        client_secret="secret",
        token_url=TOKEN_URL,
        api_url=API,
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestTokens:
    async def test_customer_header_and_credentials(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["header"] = request.headers.get("X-TG-CustomerUserId")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"accessToken": "tok", "expiresIn": 3600})

        token = await _client(handler).get_access_token("user-1")

        assert token.access_token == "tok"
        assert token.expires_in == 3600
        assert seen["header"] == "user-1"
        assert seen["body"]["grantType"] == "client_credentials"

    async def test_error_status_raises(self):
        client = _client(lambda request: httpx.Response(401, text="invalid_client"))

        with pytest.raises(GatewayError) as exc_info:
            await client.get_access_token()

        assert exc_info.value.status == 401
        assert exc_info.value.is_client_error

    async def test_transport_failure_has_no_status(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).get_access_token()

        assert exc_info.value.status is None
        assert not exc_info.value.is_client_error

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.setattr("finsync.core.config.GATEWAY_CLIENT_ID", None)
        with pytest.raises(ValueError):
            GatewayClient(client_secret="secret")


class TestTransactions:
    async def test_iterates_every_page(self):
        pages = {
            "1": [_txn("t1"), _txn("t2")],
            "2": [_txn("t3", indicator="Credit", value="100")],
        }
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer tok"
            page = request.url.params["page"]
            requested.append(page)
            return httpx.Response(
                200,
                json={"transactions": pages[page], "meta": {"currentPage": int(page), "totalPages": 2}},
            )

        client = _client(handler)
        txns = [t async for t in client.iter_transactions("tok", "acc-1")]

        assert requested == ["1", "2"]
        assert [t.transaction_id for t in txns] == ["t1", "t2", "t3"]
        assert txns[0].amount == Decimal("5.000")
        assert txns[0].merchant_name == "Carrefour"
        assert txns[0].booking_datetime.tzinfo is not None
        assert txns[2].is_credit is True

    async def test_stops_on_empty_page(self):
        calls = []

        def handler(request):
            calls.append(request.url.params["page"])
            return httpx.Response(200, json={"transactions": [], "meta": {"totalPages": 5}})

        txns = [t async for t in _client(handler).iter_transactions("tok", "acc-1")]

        assert txns == []
        assert calls == ["1"]


class TestSalaryInfo:
    async def test_falls_back_to_second_endpoint(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/insights/v1/income/salary":
                return httpx.Response(404)
            return httpx.Response(200, json={"detected": True, "amount": 1200.5, "currency": "BHD"})

        info = await _client(handler).get_salary_info("tok")

        assert paths == ["/insights/v1/income/salary", "/insights/v1/salary"]
        assert info.detected is True
        assert info.amount == Decimal("1200.5")
        assert info.source == "gateway"

    async def test_none_when_no_endpoint_exists(self):
        info = await _client(lambda request: httpx.Response(404)).get_salary_info("tok")
        assert info is None

    async def test_other_errors_propagate(self):
        with pytest.raises(GatewayError):
            await _client(lambda request: httpx.Response(500, text="boom")).get_salary_info("tok")


class TestBalances:
    async def test_parses_balances(self):
        def handler(request):
            return httpx.Response(200, json={"balances": [
                {"accountId": "acc-1", "type": "Available", "amount": {"value": 90, "currency": "BHD"}},
                {"accountId": "acc-1", "type": "Current", "amount": {"value": "100.250", "currency": "BHD"}},
            ]})

        balances = await _client(handler).get_account_balance("tok", "acc-1")

        assert pick_current_balance(balances).amount == Decimal("100.250")

    def test_first_balance_when_no_current(self):
        balances = [GatewayBalance("acc-1", "Expected", Decimal("1"), "BHD")]
        assert pick_current_balance(balances).type == "Expected"
        assert pick_current_balance([]) is None
