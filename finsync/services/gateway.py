"""Open Banking gateway client for tokens, accounts, balances, transactions and insights."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator

import httpx

from finsync.core import config

logger = logging.getLogger(__name__)

# Tried in order; a 404 moves on to the next one
SALARY_ENDPOINTS = (
    "/insights/v1/income/salary",
    "/insights/v1/salary",
)


class GatewayError(Exception):
    """Non-2xx response or transport failure talking to the gateway."""

    def __init__(self, status: int | None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Gateway request failed: {status} - {body[:200]}")

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500


@dataclass(frozen=True)
class GatewayToken:
    access_token: str
    expires_in: int


@dataclass(frozen=True)
class ConnectIntent:
    connect_url: str
    intent_id: str
    expiry: str | None = None


@dataclass(frozen=True)
class GatewayAccount:
    account_id: str
    provider_id: str | None
    provider_name: str | None
    account_type: str | None
    currency: str | None
    identification: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class GatewayBalance:
    account_id: str
    type: str
    amount: Decimal
    currency: str | None


@dataclass(frozen=True)
class GatewayTransaction:
    transaction_id: str
    account_id: str
    provider_id: str | None
    description: str | None
    is_credit: bool
    amount: Decimal
    currency: str | None
    booking_datetime: datetime
    category_name: str | None = None
    category_group: str | None = None
    category_icon: str | None = None
    merchant_name: str | None = None
    merchant_logo: str | None = None


@dataclass(frozen=True)
class TransactionPage:
    transactions: list[GatewayTransaction]
    current_page: int
    total_pages: int


@dataclass(frozen=True)
class SalaryInfo:
    """Detected salary, tagged with where the detection came from."""
    detected: bool
    amount: Decimal | None = None
    currency: str | None = None
    employer: str | None = None
    frequency: str | None = None
    last_pay_date: str | None = None
    next_expected_date: str | None = None
    confidence: float | None = None
    source: str = "gateway"


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_account(raw: dict) -> GatewayAccount:
    return GatewayAccount(
        account_id=raw["accountId"],
        provider_id=raw.get("providerId"),
        provider_name=raw.get("providerName"),
        account_type=raw.get("accountType"),
        currency=raw.get("currency"),
        identification=raw.get("identification"),
        name=raw.get("name"),
    )


def _parse_balance(raw: dict) -> GatewayBalance:
    amount = raw.get("amount") or {}
    return GatewayBalance(
        account_id=raw.get("accountId", ""),
        type=raw.get("type", ""),
        amount=Decimal(str(amount.get("value", 0))),
        currency=amount.get("currency"),
    )


def parse_transaction(raw: dict) -> GatewayTransaction:
    """Convert one gateway transaction payload into a GatewayTransaction."""
    amount = raw.get("amount") or {}
    category = raw.get("category") or {}
    merchant = raw.get("merchant") or {}
    return GatewayTransaction(
        transaction_id=raw["transactionId"],
        account_id=raw.get("accountId", ""),
        provider_id=raw.get("providerId"),
        description=raw.get("transactionDescription"),
        is_credit=raw.get("creditDebitIndicator") == "Credit",
        amount=Decimal(str(amount.get("value", 0))),
        currency=amount.get("currency"),
        booking_datetime=_parse_datetime(raw["bookingDateTime"]),
        category_name=category.get("name"),
        category_group=category.get("group"),
        category_icon=category.get("icon"),
        merchant_name=merchant.get("name"),
        merchant_logo=merchant.get("logo"),
    )


def pick_current_balance(balances: list[GatewayBalance]) -> GatewayBalance | None:
    """Prefer the "Current" balance, otherwise the first one reported."""
    for balance in balances:
        if balance.type == "Current":
            return balance
    return balances[0] if balances else None


class GatewayClient:
    """
    Async client for the Open Banking gateway.

    Every non-2xx response raises GatewayError(status, body). Transport
    failures raise GatewayError with status None.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        token_url: str | None = None,
        api_url: str | None = None,
        http: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
    ):
        self.client_id = client_id or config.GATEWAY_CLIENT_ID
        self.client_secret = client_secret or config.GATEWAY_CLIENT_SECRET
        self.redirect_uri = redirect_uri or config.GATEWAY_REDIRECT_URI
        self.token_url = token_url or config.GATEWAY_TOKEN_URL
        self.api_url = (api_url or config.GATEWAY_API_URL).rstrip("/")

        if not self.client_id or not self.client_secret:
            raise ValueError(
                "GATEWAY_CLIENT_ID and GATEWAY_CLIENT_SECRET environment variables are required"
            )

        self._http = http or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str | None = None,
        headers: dict | None = None,
        **kwargs,
    ) -> dict:
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"

        try:
            response = await self._http.request(method, url, headers=request_headers, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayError(None, str(e)) from e

        if response.status_code >= 400:
            raise GatewayError(response.status_code, response.text)

        if not response.content:
            return {}
        return response.json()

    async def get_access_token(self, customer_user_id: str | None = None) -> GatewayToken:
        """Request a client-credentials token, scoped to a customer when one is given."""
        headers = {}
        if customer_user_id:
            headers["X-TG-CustomerUserId"] = customer_user_id

        data = await self._request(
            "POST",
            self.token_url,
            headers=headers,
            json={
                "clientId": self.client_id,
                "clientSecret": self.client_secret,
                "grantType": "client_credentials",
            },
        )
        return GatewayToken(
            access_token=data["accessToken"],
            expires_in=int(data.get("expiresIn", 0)),
        )

    async def create_intent(
        self,
        access_token: str,
        user_id: str,
        first_name: str,
        last_name: str,
        email: str | None = None,
    ) -> ConnectIntent:
        """Create a link intent; the user picks their bank at the returned connect URL."""
        data = await self._request(
            "POST",
            f"{self.api_url}/accountInformation/v1/intent",
            access_token=access_token,
            json={
                "user": {
                    "customerUserId": user_id,
                    "firstName": first_name,
                    "lastName": last_name,
                    "email": email,
                },
                "redirectUrl": self.redirect_uri,
                "providerType": "Retail",
                "language": "EN",
            },
        )
        return ConnectIntent(
            connect_url=data["connectUrl"],
            intent_id=data["intentId"],
            expiry=data.get("expiry"),
        )

    async def get_accounts(self, access_token: str) -> list[GatewayAccount]:
        data = await self._request(
            "GET",
            f"{self.api_url}/accountInformation/v2/accounts",
            access_token=access_token,
        )
        return [_parse_account(a) for a in data.get("accounts", [])]

    async def get_account_balance(self, access_token: str, account_id: str) -> list[GatewayBalance]:
        """Fetch the latest balances straight from the bank."""
        data = await self._request(
            "GET",
            f"{self.api_url}/accountInformation/v2/accounts/{account_id}/balances/refresh",
            access_token=access_token,
        )
        return [_parse_balance(b) for b in data.get("balances", [])]

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        page: int = 1,
    ) -> TransactionPage:
        params = {"page": str(page)}
        if from_date:
            params["fromBookingDateTime"] = from_date.isoformat()
        if to_date:
            params["toBookingDateTime"] = to_date.isoformat()

        data = await self._request(
            "GET",
            f"{self.api_url}/accountInformation/v2/accounts/{account_id}/transactions",
            access_token=access_token,
            params=params,
        )
        meta = data.get("meta") or {}
        return TransactionPage(
            transactions=[parse_transaction(t) for t in data.get("transactions", [])],
            current_page=int(meta.get("currentPage", page)),
            total_pages=int(meta.get("totalPages", 1)),
        )

    async def iter_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AsyncIterator[GatewayTransaction]:
        """Yield transactions across every page of the window."""
        page = 1
        while True:
            result = await self.get_transactions(access_token, account_id, from_date, to_date, page)
            for txn in result.transactions:
                yield txn
            if page >= result.total_pages or not result.transactions:
                break
            page += 1

    async def revoke_consent(self, access_token: str, consent_id: str) -> None:
        await self._request(
            "DELETE",
            f"{self.api_url}/consentInformation/v1/consents/{consent_id}",
            access_token=access_token,
        )

    async def get_salary_info(self, access_token: str) -> SalaryInfo | None:
        """
        Ask the gateway for salary detection.

        Returns None when no known endpoint variant is available for this
        customer; any other failure propagates.
        """
        for path in SALARY_ENDPOINTS:
            try:
                data = await self._request("GET", f"{self.api_url}{path}", access_token=access_token)
            except GatewayError as e:
                if e.status == 404:
                    logger.info(f"Salary endpoint {path} not available, trying next variant")
                    continue
                raise

            amount = data.get("amount")
            return SalaryInfo(
                detected=bool(data.get("detected")),
                amount=Decimal(str(amount)) if amount is not None else None,
                currency=data.get("currency"),
                employer=data.get("employer"),
                frequency=data.get("frequency"),
                last_pay_date=data.get("lastPayDate"),
                next_expected_date=data.get("nextExpectedDate"),
                confidence=data.get("confidence"),
                source="gateway",
            )
        return None

    async def get_spending_summary(self, access_token: str) -> dict:
        """Gateway-side transaction insights (category totals, top merchants)."""
        return await self._request(
            "GET",
            f"{self.api_url}/insights/v1/transaction-insights",
            access_token=access_token,
        )
