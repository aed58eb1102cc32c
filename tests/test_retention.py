"""Tests for the data retention job."""

from datetime import timedelta

from sqlalchemy import select, update, func

from finsync.models.banking import BankAccount, BankConnection, ConnectionStatus, Transaction
from finsync.models.compliance import ConsentStatus
from finsync.services.retention import ANONYMIZED_DESCRIPTION, run_data_retention

from tests.fakes import make_txn


async def _sync(sync_engine, gateway, db, connection, account, *txn_ids):
    gateway.transactions[account] = [
        make_txn(txn_id, account, "10", "LULU HYPERMARKET", merchant_name="Lulu") for txn_id in txn_ids
    ]
    await sync_engine.sync_connection(db, connection)


class TestRunDataRetention:
    async def test_anonymizes_after_revocation_window(
        self, db, audit, audit_storage, sync_engine, gateway, make_consent, make_connection, now
    ):
        old = await make_consent(status=ConsentStatus.REVOKED, revoked_at=now - timedelta(days=31))
        recent = await make_consent(status=ConsentStatus.REVOKED, revoked_at=now - timedelta(days=5))
        old_conn = await make_connection(name="Old", accounts=("o-1",), consent_id=old.id)
        recent_conn = await make_connection(name="Recent", accounts=("r-1",), consent_id=recent.id)
        await _sync(sync_engine, gateway, db, old_conn, "o-1", "t1", "t2")
        await _sync(sync_engine, gateway, db, recent_conn, "r-1", "t3")

        report = await run_data_retention(db, audit, now=now)

        assert report.transactions_anonymized == 2
        rows = (await db.execute(
            select(Transaction.external_transaction_id, Transaction.description,
                   Transaction.merchant_name, Transaction.is_anonymized)
            .order_by(Transaction.external_transaction_id)
        )).all()
        assert [tuple(r) for r in rows] == [
            ("t1", ANONYMIZED_DESCRIPTION, None, True),
            ("t2", ANONYMIZED_DESCRIPTION, None, True),
            ("t3", "LULU HYPERMARKET", "Lulu", False),
        ]
        assert audit_storage.actions() == ["data_delete"]

    async def test_second_run_does_not_reanonymize(self, db, audit, sync_engine, gateway, make_consent, make_connection, now):
        consent = await make_consent(status=ConsentStatus.REVOKED, revoked_at=now - timedelta(days=40))
        connection = await make_connection(consent_id=consent.id)
        await _sync(sync_engine, gateway, db, connection, "acc-1", "t1")

        await run_data_retention(db, audit, now=now)
        report = await run_data_retention(db, audit, now=now)

        assert report.transactions_anonymized == 0

    async def test_purges_rows_soft_deleted_past_grace(self, db, audit, sync_engine, gateway, make_connection, now):
        expired = await make_connection(name="Gone", accounts=("g-1",), status=ConnectionStatus.REVOKED)
        lingering = await make_connection(name="Recent", accounts=("l-1",), status=ConnectionStatus.REVOKED)
        await _sync(sync_engine, gateway, db, expired, "g-1", "t1")
        await _sync(sync_engine, gateway, db, lingering, "l-1", "t2")

        for connection, age in ((expired, 91), (lingering, 10)):
            deleted_at = now - timedelta(days=age)
            accounts = select(BankAccount.id).where(BankAccount.connection_id == connection.id)
            await db.execute(
                update(Transaction).where(Transaction.account_id.in_(accounts)).values(deleted_at=deleted_at)
            )
            await db.execute(
                update(BankAccount).where(BankAccount.connection_id == connection.id).values(deleted_at=deleted_at)
            )
            await db.execute(
                update(BankConnection).where(BankConnection.id == connection.id).values(deleted_at=deleted_at)
            )

        report = await run_data_retention(db, audit, now=now)

        assert report.transactions_deleted == 1
        assert report.accounts_deleted == 1
        assert report.connections_deleted == 1
        remaining = (await db.execute(select(func.count(BankConnection.id)))).scalar_one()
        assert remaining == 1
