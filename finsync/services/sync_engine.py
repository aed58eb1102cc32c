"""
Bank data synchronization: balances and transactions per connection.

Failures are isolated per account and per connection and reported as strings
in SyncResult.errors. Ingestion is idempotent on
(account_id, external_transaction_id).
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Iterable, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from finsync.core.config import SyncConfig, load_sync_config
from finsync.core.database import async_session_factory, upsert_for
from finsync.models.banking import (
    BankConnection,
    BankAccount,
    Transaction,
    ConnectionStatus,
    TransactionType,
)
from finsync.services.categorizer import resolve_category
from finsync.services.gateway import GatewayTransaction, GatewayBalance, pick_current_balance
from finsync.services.token_manager import TokenManager, RefreshFailed, persist_refreshed_token
from finsync.utils.timezone import utcnow, as_utc

logger = logging.getLogger(__name__)

AVAILABLE_BALANCE_TYPES = ("Available", "InterimAvailable")


class SyncType(str, Enum):
    NONE = "none"
    BALANCE_ONLY = "balance_only"
    FULL = "full"


@dataclass
class SyncResult:
    accounts_updated: int = 0
    transactions_added: int = 0
    transactions_updated: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "SyncResult") -> None:
        self.accounts_updated += other.accounts_updated
        self.transactions_added += other.transactions_added
        self.transactions_updated += other.transactions_updated
        self.errors.extend(other.errors)


@dataclass
class BatchSyncSummary:
    users_processed: int = 0
    accounts_updated: int = 0
    transactions_added: int = 0
    transactions_updated: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: int = 0


@dataclass(frozen=True)
class _AccountRef:
    # Plain values so a rolled-back savepoint never forces a reload
    id: UUID
    external_account_id: str
    last_synced_at: datetime | None


def get_oldest_sync_time(accounts: Iterable[BankAccount]) -> datetime | None:
    """
    Oldest last_synced_at across the accounts.

    None when there are no accounts or any account was never synced.
    """
    oldest = None
    for account in accounts:
        synced = as_utc(account.last_synced_at)
        if synced is None:
            return None
        if oldest is None or synced < oldest:
            oldest = synced
    return oldest


def determine_sync_type(
    oldest_synced_at: datetime | None,
    now: datetime,
    config: SyncConfig,
) -> SyncType:
    if oldest_synced_at is None:
        return SyncType.FULL

    age = now - as_utc(oldest_synced_at)
    if age < timedelta(minutes=config.fresh_threshold_minutes):
        return SyncType.NONE
    if age < timedelta(minutes=config.balance_only_threshold_minutes):
        return SyncType.BALANCE_ONLY
    return SyncType.FULL


def normalize_transaction(
    txn: GatewayTransaction,
    user_id: str,
    account_id: UUID,
    provider_id: str | None = None,
) -> dict:
    """Map a gateway transaction onto transaction column values."""
    return {
        "user_id": user_id,
        "account_id": account_id,
        "external_transaction_id": txn.transaction_id,
        "provider_id": txn.provider_id or provider_id,
        "amount": abs(txn.amount),
        "currency": txn.currency,
        "transaction_type": TransactionType.CREDIT if txn.is_credit else TransactionType.DEBIT,
        "description": txn.description or "",
        "merchant_name": txn.merchant_name,
        "merchant_logo": txn.merchant_logo,
        "category": resolve_category(txn.category_name, txn.description, txn.merchant_name),
        "category_group": txn.category_group or ("Income" if txn.is_credit else "Expense"),
        "category_icon": txn.category_icon,
        "transaction_date": txn.booking_datetime,
        "booking_date": txn.booking_datetime,
    }


async def run_in_batches(
    items: Sequence,
    worker: Callable[[object], Awaitable[None]],
    batch_size: int,
    delay_seconds: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Run worker over items, batch_size at a time, pausing between batches."""
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        await asyncio.gather(*(worker(item) for item in batch))
        if start + batch_size < len(items):
            await sleep(delay_seconds)


class SyncEngine:
    """Pulls balances and transactions from the gateway into the store."""

    def __init__(
        self,
        gateway,
        token_manager: TokenManager | None = None,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.config = config or load_sync_config()
        self.token_manager = token_manager or TokenManager(gateway, self.config, clock)
        self.session_factory = session_factory
        self.sleep = sleep
        self.clock = clock

    async def _call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.config.gateway_timeout_seconds)

    async def _fetch_transactions(
        self,
        access_token: str,
        external_account_id: str,
        from_date: datetime,
    ) -> list[GatewayTransaction]:
        return [
            txn async for txn in self.gateway.iter_transactions(access_token, external_account_id, from_date)
        ]

    async def sync_connection(
        self,
        db: AsyncSession,
        connection: BankConnection,
        mode: SyncType = SyncType.FULL,
    ) -> SyncResult:
        """
        Sync one connection's accounts.

        Never raises for account or connection failures; they are reported
        in the returned SyncResult.errors.
        """
        result = SyncResult()
        if mode == SyncType.NONE:
            return result

        connection_id = connection.id
        user_id = connection.user_id
        bank_name = connection.institution_name or connection.institution_id or str(connection_id)
        provider_id = connection.institution_id

        try:
            token = await self._call(self.token_manager.get_valid_token(user_id, connection))
        except RefreshFailed:
            logger.error(f"Token refresh rejected for connection {connection_id}, marking expired")
            await db.execute(
                update(BankConnection)
                .where(BankConnection.id == connection_id)
                .values(status=ConnectionStatus.EXPIRED, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            result.errors.append(f"{bank_name}: Token refresh failed")
            return result
        except Exception as e:
            logger.error(f"Error getting token for connection {connection_id}: {e}")
            result.errors.append(f"{bank_name}: Token refresh failed")
            return result

        try:
            if token.should_update:
                await persist_refreshed_token(db, connection_id, token)

            accounts_result = await db.execute(
                select(BankAccount.id, BankAccount.external_account_id, BankAccount.last_synced_at)
                .where(
                    BankAccount.connection_id == connection_id,
                    BankAccount.deleted_at.is_(None),
                )
                .order_by(BankAccount.created_at)
            )
            accounts = [
                _AccountRef(id=row.id, external_account_id=row.external_account_id, last_synced_at=row.last_synced_at)
                for row in accounts_result.all()
            ]
        except Exception as e:
            logger.error(f"Error syncing connection {connection_id}: {e}")
            result.errors.append(f"{bank_name}: Connection sync failed")
            return result

        for account in accounts:
            try:
                async with db.begin_nested():
                    added, updated = await self._sync_account(
                        db, token.access_token, user_id, provider_id, account, mode
                    )
                result.accounts_updated += 1
                result.transactions_added += added
                result.transactions_updated += updated
            except Exception as e:
                logger.error(f"Error syncing account {account.external_account_id}: {e}")
                result.errors.append(f"{bank_name}/{account.external_account_id}: Sync failed")

        return result

    async def _sync_account(
        self,
        db: AsyncSession,
        access_token: str,
        user_id: str,
        provider_id: str | None,
        account: _AccountRef,
        mode: SyncType,
    ) -> tuple[int, int]:
        now = self.clock()

        balances: list[GatewayBalance] = await self._call(
            self.gateway.get_account_balance(access_token, account.external_account_id)
        )
        values = {"last_synced_at": now, "updated_at": now}
        current = pick_current_balance(balances)
        if current is not None:
            available = next((b for b in balances if b.type in AVAILABLE_BALANCE_TYPES), current)
            values["balance"] = current.amount
            values["available_balance"] = available.amount
            if current.currency:
                values["currency"] = current.currency

        if mode != SyncType.FULL:
            await self._update_account(db, account.id, values)
            return 0, 0

        if account.last_synced_at:
            from_date = as_utc(account.last_synced_at)
        else:
            from_date = now - timedelta(days=self.config.default_transaction_days)

        fetched = await self._call(
            self._fetch_transactions(access_token, account.external_account_id, from_date)
        )
        added, updated = await self._upsert_transactions(db, user_id, provider_id, account.id, fetched)

        # last_synced_at moves only after the transactions are stored
        await self._update_account(db, account.id, values)
        return added, updated

    async def _update_account(self, db: AsyncSession, account_id: UUID, values: dict) -> None:
        await db.execute(
            update(BankAccount)
            .where(BankAccount.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _upsert_transactions(
        self,
        db: AsyncSession,
        user_id: str,
        provider_id: str | None,
        account_id: UUID,
        fetched: list[GatewayTransaction],
    ) -> tuple[int, int]:
        """Upsert on (account_id, external_transaction_id); returns (added, updated)."""
        by_id = {txn.transaction_id: txn for txn in fetched}
        if not by_id:
            return 0, 0

        existing_result = await db.execute(
            select(Transaction.external_transaction_id).where(
                Transaction.account_id == account_id,
                Transaction.external_transaction_id.in_(list(by_id)),
            )
        )
        existing = set(existing_result.scalars().all())

        now = self.clock()
        for txn in by_id.values():
            row = normalize_transaction(txn, user_id, account_id, provider_id)
            stmt = upsert_for(db, Transaction).values(id=uuid.uuid4(), created_at=now, **row)
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_id", "external_transaction_id"],
                set_={
                    "amount": stmt.excluded.amount,
                    "currency": stmt.excluded.currency,
                    "transaction_type": stmt.excluded.transaction_type,
                    "description": stmt.excluded.description,
                    "merchant_name": stmt.excluded.merchant_name,
                    "merchant_logo": stmt.excluded.merchant_logo,
                    "category": stmt.excluded.category,
                    "category_group": stmt.excluded.category_group,
                    "category_icon": stmt.excluded.category_icon,
                    "transaction_date": stmt.excluded.transaction_date,
                    "booking_date": stmt.excluded.booking_date,
                    "updated_at": now,
                },
            )
            await db.execute(stmt)

        added = len(by_id) - len(existing)
        return added, len(existing)

    async def sync_user(
        self,
        db: AsyncSession,
        user_id: str,
        mode: SyncType = SyncType.FULL,
        connection_ids: list[UUID] | None = None,
    ) -> SyncResult:
        """Sync every active connection of a user, or the given subset."""
        query = select(BankConnection).where(
            BankConnection.user_id == user_id,
            BankConnection.status == ConnectionStatus.ACTIVE,
            BankConnection.deleted_at.is_(None),
        )
        if connection_ids is not None:
            query = query.where(BankConnection.id.in_(connection_ids))

        connections = (await db.execute(query.order_by(BankConnection.created_at))).scalars().all()

        result = SyncResult()
        for connection in connections:
            result.merge(await self.sync_connection(db, connection, mode))

        logger.info(
            f"Sync for user {user_id} ({mode.value}): {result.accounts_updated} accounts, "
            f"{result.transactions_added} added, {result.transactions_updated} updated, "
            f"{len(result.errors)} errors"
        )
        return result

    async def smart_refresh(self, db: AsyncSession, user_id: str) -> tuple[SyncType, SyncResult]:
        """Refresh only as much as the age of the stalest account requires."""
        accounts_result = await db.execute(
            select(BankAccount)
            .join(BankConnection, BankAccount.connection_id == BankConnection.id)
            .where(
                BankConnection.user_id == user_id,
                BankConnection.status == ConnectionStatus.ACTIVE,
                BankConnection.deleted_at.is_(None),
                BankAccount.deleted_at.is_(None),
            )
        )
        accounts = accounts_result.scalars().all()
        if not accounts:
            return SyncType.NONE, SyncResult()

        sync_type = determine_sync_type(get_oldest_sync_time(accounts), self.clock(), self.config)
        if sync_type == SyncType.NONE:
            return sync_type, SyncResult()

        return sync_type, await self.sync_user(db, user_id, sync_type)

    async def run_in_batches(self, items: Sequence, worker: Callable[[object], Awaitable[None]]) -> None:
        await run_in_batches(
            items,
            worker,
            self.config.cron_batch_size,
            self.config.batch_delay_seconds,
            self.sleep,
        )

    async def sync_stale_connections(self) -> BatchSyncSummary:
        """
        Scheduled sync of every connection with a stale account.

        A connection is stale when any of its accounts was never synced or was
        last synced more than cron_skip_if_synced_hours ago. Users are processed
        in rate-limited batches, each user in its own session.
        """
        cutoff = self.clock() - timedelta(hours=self.config.cron_skip_if_synced_hours)
        summary = BatchSyncSummary()

        async with self.session_factory() as db:
            result = await db.execute(
                select(BankConnection)
                .options(selectinload(BankConnection.accounts))
                .where(
                    BankConnection.status == ConnectionStatus.ACTIVE,
                    BankConnection.deleted_at.is_(None),
                )
            )
            connections = result.scalars().all()

            by_user: dict[str, list[UUID]] = {}
            for connection in connections:
                accounts = [a for a in connection.accounts if a.deleted_at is None]
                is_stale = any(
                    a.last_synced_at is None or as_utc(a.last_synced_at) < cutoff
                    for a in accounts
                )
                if not is_stale:
                    summary.skipped += 1
                    continue
                by_user.setdefault(connection.user_id, []).append(connection.id)

        async def sync_one_user(user_id: str) -> None:
            try:
                async with self.session_factory() as user_db:
                    user_result = await self.sync_user(
                        user_db, user_id, SyncType.FULL, connection_ids=by_user[user_id]
                    )
                    await user_db.commit()
            except Exception as e:
                logger.error(f"Error syncing user {user_id}: {e}")
                summary.errors.append(f"User {user_id}: Sync failed")
                return

            summary.users_processed += 1
            summary.accounts_updated += user_result.accounts_updated
            summary.transactions_added += user_result.transactions_added
            summary.transactions_updated += user_result.transactions_updated
            summary.errors.extend(user_result.errors)

        await self.run_in_batches(list(by_user), sync_one_user)

        logger.info(f"Scheduled bank sync completed: {summary}")
        return summary
