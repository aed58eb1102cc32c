"""Tests for salary detection and the spending summary."""

from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from finsync.core.encryption import decrypt_token
from finsync.models.banking import BankConnection
from finsync.services.gateway import GatewayError, SalaryInfo
from finsync.services.insights import detect_salary, detect_salary_from_credits, spending_summary
from finsync.services.ledger import create_manual_transaction


class TestDetectSalaryFromCredits:
    def test_two_similar_large_credits(self, now):
        credits = [
            (Decimal("1000"), "BHD", now - timedelta(days=3)),
            (Decimal("980"), "BHD", now - timedelta(days=33)),
            (Decimal("25"), "BHD", now - timedelta(days=10)),
        ]

        info = detect_salary_from_credits(credits)

        assert info.detected is True
        assert info.amount == Decimal("990.00")
        assert info.frequency == "MONTHLY"
        assert info.source == "local"
        assert info.last_pay_date == (now - timedelta(days=3)).isoformat()

    def test_single_credit_is_not_salary(self, now):
        info = detect_salary_from_credits([(Decimal("1500"), "BHD", now)])
        assert info.detected is False

    def test_dissimilar_credits_are_not_salary(self, now):
        info = detect_salary_from_credits([
            (Decimal("400"), "BHD", now),
            (Decimal("2000"), "BHD", now - timedelta(days=30)),
        ])
        assert info.detected is False

    def test_next_date_clamps_to_month_end(self, now):
        last = now.replace(month=1, day=31)
        info = detect_salary_from_credits([
            (Decimal("800"), "BHD", last),
            (Decimal("800"), "BHD", last - timedelta(days=31)),
        ])
        assert info.next_expected_date.startswith("2026-02-28")


class TestDetectSalary:
    async def test_gateway_result_is_used(self, db, sync_engine, gateway, make_connection):
        await make_connection()
        gateway.salary = SalaryInfo(detected=True, amount=Decimal("1200"), currency="BHD", employer="ACME")

        info = await detect_salary(db, "user-1", sync_engine)

        assert info.source == "gateway"
        assert info.employer == "ACME"

    async def test_refreshed_token_is_stored(self, db, sync_engine, gateway, make_connection, now):
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))
        gateway.salary = SalaryInfo(detected=False)

        await detect_salary(db, "user-1", sync_engine, now=now)

        row = (await db.execute(
            select(BankConnection.encrypted_access_token, BankConnection.token_expires_at)
            .where(BankConnection.id == connection.id)
        )).one()
        assert decrypt_token(row.encrypted_access_token) == "fresh-token-1"
        assert row.token_expires_at.replace(tzinfo=None) == (now + timedelta(hours=1)).replace(tzinfo=None)

    async def test_gateway_failure_falls_back_to_local(self, db, sync_engine, gateway, make_connection, now):
        await make_connection()

        async def broken(access_token):
            raise GatewayError(500, "down")

        gateway.get_salary_info = broken
        for days in (2, 32):
            await create_manual_transaction(db, "user-1", "750", "credit", "salary", now - timedelta(days=days))

        info = await detect_salary(db, "user-1", sync_engine, now=now)

        assert info.source == "local"
        assert info.detected is True
        assert info.amount == Decimal("750.00")

    async def test_without_connections_uses_local(self, db, sync_engine, gateway, now):
        info = await detect_salary(db, "user-1", sync_engine, now=now)

        assert info.detected is False
        assert gateway.token_calls == 0


class TestSpendingSummary:
    async def test_percentages_and_income(self, db, now):
        for amount, ttype, category in (
            ("75", "debit", "groceries"),
            ("25", "debit", "dining"),
            ("500", "credit", "salary"),
        ):
            await create_manual_transaction(db, "user-1", amount, ttype, category, now - timedelta(days=1))

        summary = await spending_summary(db, "user-1", now - timedelta(days=7))

        assert summary.total_spending == Decimal("100")
        assert summary.total_income == Decimal("500")
        assert [(c.category, c.percentage) for c in summary.categories] == [("groceries", 75), ("dining", 25)]
