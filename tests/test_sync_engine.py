"""Tests for bank data synchronization."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from finsync.core.config import SyncConfig
from finsync.models.banking import (
    BankAccount,
    BankConnection,
    ConnectionStatus,
    Transaction,
    TransactionType,
)
from finsync.services.gateway import GatewayError
from finsync.services.sync_engine import (
    SyncEngine,
    SyncType,
    determine_sync_type,
    get_oldest_sync_time,
    run_in_batches,
)

from tests.fakes import current_balance, make_txn


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(gateway, session_factory, sync_config, sleeps, now):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return SyncEngine(
        gateway,
        session_factory=session_factory,
        config=sync_config,
        sleep=fake_sleep,
        clock=lambda: now,
    )


async def _count_transactions(db, user_id="user-1"):
    result = await db.execute(select(func.count(Transaction.id)).where(Transaction.user_id == user_id))
    return result.scalar_one()


async def _connection_status(db, connection_id):
    result = await db.execute(select(BankConnection.status).where(BankConnection.id == connection_id))
    return result.scalar_one()


class TestDetermineSyncType:
    def test_never_synced_is_full(self, now):
        assert determine_sync_type(None, now, SyncConfig()) == SyncType.FULL

    def test_recent_sync_is_none(self, now):
        assert determine_sync_type(now - timedelta(minutes=10), now, SyncConfig()) == SyncType.NONE

    def test_moderately_stale_is_balance_only(self, now):
        assert determine_sync_type(now - timedelta(minutes=30), now, SyncConfig()) == SyncType.BALANCE_ONLY

    def test_old_sync_is_full(self, now):
        assert determine_sync_type(now - timedelta(hours=2), now, SyncConfig()) == SyncType.FULL

    def test_thresholds_are_exclusive(self, now):
        config = SyncConfig()
        assert determine_sync_type(now - timedelta(minutes=15), now, config) == SyncType.BALANCE_ONLY
        assert determine_sync_type(now - timedelta(minutes=60), now, config) == SyncType.FULL


class TestOldestSyncTime:
    def test_empty_is_none(self):
        assert get_oldest_sync_time([]) is None

    def test_any_never_synced_is_none(self, now):
        accounts = [BankAccount(last_synced_at=now), BankAccount(last_synced_at=None)]
        assert get_oldest_sync_time(accounts) is None

    def test_returns_minimum(self, now):
        accounts = [
            BankAccount(last_synced_at=now - timedelta(minutes=5)),
            BankAccount(last_synced_at=now - timedelta(hours=3)),
        ]
        assert get_oldest_sync_time(accounts) == now - timedelta(hours=3)


class TestSyncConnection:
    async def test_full_sync_stores_balance_and_transactions(self, db, engine, gateway, make_connection, now):
        connection = await make_connection()
        gateway.balances["acc-1"] = [current_balance("acc-1", "1250.500")]
        gateway.transactions["acc-1"] = [
            make_txn("t1", "acc-1", "-12.500", "LULU HYPERMARKET"),
            make_txn("t2", "acc-1", "800", "SALARY MARCH", is_credit=True, category_name="Salary"),
        ]

        result = await engine.sync_connection(db, connection, SyncType.FULL)

        assert result.errors == []
        assert result.accounts_updated == 1
        assert result.transactions_added == 2
        account = (await db.execute(select(BankAccount.balance, BankAccount.last_synced_at))).one()
        assert account.balance == Decimal("1250.500")
        assert account.last_synced_at is not None

        rows = (await db.execute(
            select(Transaction.external_transaction_id, Transaction.amount, Transaction.category,
                   Transaction.transaction_type)
            .order_by(Transaction.external_transaction_id)
        )).all()
        assert [tuple(r) for r in rows] == [
            ("t1", Decimal("12.500"), "groceries", TransactionType.DEBIT),
            ("t2", Decimal("800.000"), "salary", TransactionType.CREDIT),
        ]

    async def test_resync_does_not_duplicate(self, db, engine, gateway, make_connection):
        connection = await make_connection()
        gateway.transactions["acc-1"] = [
            make_txn("t1", "acc-1", "5", "COFFEE"),
            make_txn("t2", "acc-1", "7", "TAXI"),
        ]

        first = await engine.sync_connection(db, connection, SyncType.FULL)
        second = await engine.sync_connection(db, connection, SyncType.FULL)

        assert first.transactions_added == 2
        assert second.transactions_added == 0
        assert second.transactions_updated == 2
        assert await _count_transactions(db) == 2

    async def test_balance_only_skips_transactions(self, db, engine, gateway, make_connection):
        connection = await make_connection()
        gateway.balances["acc-1"] = [current_balance("acc-1", "99")]
        gateway.transactions["acc-1"] = [make_txn("t1", "acc-1", "5")]

        result = await engine.sync_connection(db, connection, SyncType.BALANCE_ONLY)

        assert result.accounts_updated == 1
        assert result.transactions_added == 0
        assert await _count_transactions(db) == 0

    async def test_failing_account_is_isolated(self, db, engine, gateway, make_connection):
        connection = await make_connection(accounts=("acc-1", "acc-2"))
        gateway.failing_accounts.add("acc-1")
        gateway.transactions["acc-2"] = [make_txn("t9", "acc-2", "3")]

        result = await engine.sync_connection(db, connection, SyncType.FULL)

        assert result.accounts_updated == 1
        assert result.transactions_added == 1
        assert result.errors == ["Bank A/acc-1: Sync failed"]

    async def test_refreshed_token_is_persisted(self, db, engine, gateway, make_connection, now):
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))

        await engine.sync_connection(db, connection, SyncType.BALANCE_ONLY)

        assert gateway.token_calls == 1
        expiry = (await db.execute(
            select(BankConnection.token_expires_at).where(BankConnection.id == connection.id)
        )).scalar_one()
        assert expiry.replace(tzinfo=None) == (now + timedelta(hours=1)).replace(tzinfo=None)

    async def test_transient_token_failure_keeps_connection_active(self, db, engine, gateway, make_connection, now):
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))
        gateway.token_error = GatewayError(502, "bad gateway")

        result = await engine.sync_connection(db, connection, SyncType.FULL)

        assert result.errors == ["Bank A: Token refresh failed"]
        assert await _connection_status(db, connection.id) == ConnectionStatus.ACTIVE

    async def test_slow_account_times_out_without_stopping_siblings(
        self, db, gateway, session_factory, make_connection, now
    ):
        engine = SyncEngine(
            gateway,
            session_factory=session_factory,
            config=SyncConfig(gateway_timeout_seconds=0.01),
            clock=lambda: now,
        )
        connection = await make_connection(accounts=("acc-1", "acc-2"))
        gateway.slow_accounts.add("acc-1")
        gateway.balances["acc-2"] = [current_balance("acc-2", "40")]

        result = await engine.sync_connection(db, connection, SyncType.BALANCE_ONLY)

        assert result.errors == ["Bank A/acc-1: Sync failed"]
        assert result.accounts_updated == 1
        balances = dict((await db.execute(
            select(BankAccount.external_account_id, BankAccount.balance)
        )).all())
        assert balances["acc-2"] == Decimal("40")
        assert await _connection_status(db, connection.id) == ConnectionStatus.ACTIVE


class TestSyncUser:
    async def test_one_failed_connection_does_not_stop_others(self, db, engine, gateway, make_connection, now):
        await make_connection(name="Bank A", accounts=("a-1",))
        bad = await make_connection(name="Bank B", accounts=("b-1",), token_expires_at=now - timedelta(hours=1))
        await make_connection(name="Bank C", accounts=("c-1",))
        gateway.token_error = GatewayError(401, "invalid_grant")

        result = await engine.sync_user(db, "user-1", SyncType.BALANCE_ONLY)

        assert result.accounts_updated == 2
        assert result.errors == ["Bank B: Token refresh failed"]
        assert await _connection_status(db, bad.id) == ConnectionStatus.EXPIRED

    async def test_inactive_connections_are_skipped(self, db, engine, make_connection):
        await make_connection(status=ConnectionStatus.EXPIRED)

        result = await engine.sync_user(db, "user-1")

        assert result.accounts_updated == 0


class TestSmartRefresh:
    async def test_fresh_accounts_are_not_synced(self, db, engine, gateway, make_connection, now):
        await make_connection(last_synced_at=now - timedelta(minutes=2))
        gateway.transactions["acc-1"] = [make_txn("t1", "acc-1", "5")]

        sync_type, result = await engine.smart_refresh(db, "user-1")

        assert sync_type == SyncType.NONE
        assert result.accounts_updated == 0

    async def test_never_synced_account_forces_full(self, db, engine, gateway, make_connection, now):
        await make_connection(name="Bank A", accounts=("a-1",), last_synced_at=now - timedelta(minutes=2))
        await make_connection(name="Bank B", accounts=("b-1",), last_synced_at=None)
        gateway.transactions["b-1"] = [make_txn("t1", "b-1", "5")]

        sync_type, result = await engine.smart_refresh(db, "user-1")

        assert sync_type == SyncType.FULL
        assert result.transactions_added == 1

    async def test_no_accounts(self, db, engine):
        sync_type, result = await engine.smart_refresh(db, "nobody")
        assert sync_type == SyncType.NONE


class TestRunInBatches:
    async def test_batches_with_delay_between(self):
        calls, sleeps = [], []

        async def worker(item):
            calls.append(item)

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            calls.append("pause")

        await run_in_batches([1, 2, 3, 4], worker, batch_size=2, delay_seconds=1.0, sleep=fake_sleep)

        assert calls == [1, 2, "pause", 3, 4]
        assert sleeps == [1.0]

    async def test_empty_input(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        async def worker(item):
            raise AssertionError("not called")

        await run_in_batches([], worker, batch_size=5, delay_seconds=6.0, sleep=fake_sleep)
        assert sleeps == []

    def test_delay_follows_rate_limit(self):
        assert SyncConfig(cron_batch_size=2, cron_rate_limit_per_minute=60).batch_delay_seconds == 1.0
        assert SyncConfig(cron_rate_limit_per_minute=10).batch_delay_seconds == 6.0


class TestSyncStaleConnections:
    async def test_recently_synced_connections_are_skipped(self, db, engine, gateway, make_connection, now, sleeps):
        await make_connection(name="Fresh", accounts=("f-1",), last_synced_at=now - timedelta(hours=1))
        await make_connection(name="Stale", accounts=("s-1",), last_synced_at=now - timedelta(hours=13))
        await make_connection(user_id="user-2", name="New", accounts=("n-1",), last_synced_at=None)
        gateway.transactions["s-1"] = [make_txn("t1", "s-1", "5")]
        await db.commit()

        summary = await engine.sync_stale_connections()

        assert summary.skipped == 1
        assert summary.users_processed == 2
        assert summary.accounts_updated == 2
        assert summary.transactions_added == 1
        assert summary.errors == []
        assert sleeps == [1.0]

        fresh_synced = (await db.execute(
            select(BankAccount.last_synced_at).where(BankAccount.external_account_id == "f-1")
        )).scalar_one()
        assert fresh_synced.replace(tzinfo=None) == (now - timedelta(hours=1)).replace(tzinfo=None)
