"""In-process fakes and builders shared by the tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from finsync.services.audit import AuditStorage, AuditEvent
from finsync.services.gateway import (
    ConnectIntent,
    GatewayAccount,
    GatewayBalance,
    GatewayError,
    GatewayToken,
    GatewayTransaction,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class InMemoryAuditStorage(AuditStorage):
    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action_type for e in self.events]


class FakeGateway:
    """In-process stand-in for GatewayClient, keyed by external account id."""

    def __init__(self):
        self.token_calls = 0
        self.token_error: Exception | None = None
        self.expires_in = 3600
        self.accounts = []
        self.balances: dict[str, list[GatewayBalance]] = {}
        self.transactions: dict[str, list[GatewayTransaction]] = {}
        self.failing_accounts: set[str] = set()
        self.slow_accounts: set[str] = set()
        self.slow_seconds = 1.0
        self.salary = None
        self.revoked: list[str] = []
        self.intents: list[str] = []

    async def get_access_token(self, customer_user_id=None):
        self.token_calls += 1
        issued = self.token_calls
        await asyncio.sleep(0)
        if self.token_error is not None:
            raise self.token_error
        return GatewayToken(access_token=f"fresh-token-{issued}", expires_in=self.expires_in)

    async def create_intent(self, access_token, user_id, first_name, last_name, email=None):
        self.intents.append(user_id)
        return ConnectIntent(connect_url=f"https://connect.example/{user_id}", intent_id=f"intent-{len(self.intents)}")

    async def get_accounts(self, access_token):
        return list(self.accounts)

    async def get_account_balance(self, access_token, account_id):
        if account_id in self.failing_accounts:
            raise GatewayError(500, "bank unavailable")
        if account_id in self.slow_accounts:
            await asyncio.sleep(self.slow_seconds)
        return self.balances.get(account_id, [])

    async def iter_transactions(self, access_token, account_id, from_date=None, to_date=None):
        for txn in self.transactions.get(account_id, []):
            yield txn

    async def revoke_consent(self, access_token, consent_id):
        self.revoked.append(consent_id)

    async def get_salary_info(self, access_token):
        return self.salary


def make_txn(
    transaction_id: str,
    account_id: str,
    amount: str,
    description: str = "",
    is_credit: bool = False,
    booked: datetime = NOW - timedelta(days=1),
    category_name: str | None = None,
    merchant_name: str | None = None,
) -> GatewayTransaction:
    return GatewayTransaction(
        transaction_id=transaction_id,
        account_id=account_id,
        provider_id="BANK",
        description=description,
        is_credit=is_credit,
        amount=Decimal(amount),
        currency="BHD",
        booking_datetime=booked,
        category_name=category_name,
        merchant_name=merchant_name,
    )


def current_balance(account_id: str, amount: str) -> GatewayBalance:
    return GatewayBalance(account_id=account_id, type="Current", amount=Decimal(amount), currency="BHD")


def gateway_account(account_id: str, identification: str | None = None, provider: str = "NBB") -> GatewayAccount:
    return GatewayAccount(
        account_id=account_id,
        provider_id=provider,
        provider_name="National Bank",
        account_type="Current",
        currency="BHD",
        identification=identification,
    )
