"""Ledger reads and manual (cash) transaction entry."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import InvalidInputError
from finsync.models.banking import BankAccount, BankConnection, Transaction, TransactionType, ConnectionStatus
from finsync.services.aggregator import parse_amount
from finsync.services.categorizer import VALID_CATEGORIES, INCOME_CATEGORIES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionPage:
    items: list[Transaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


async def create_manual_transaction(
    db: AsyncSession,
    user_id: str,
    amount,
    transaction_type: str,
    category: str,
    transaction_date: date | datetime | None,
    description: str | None = None,
    merchant_name: str | None = None,
    currency: str = "BHD",
    account_id: UUID | None = None,
) -> Transaction:
    """
    Record a cash or otherwise untracked transaction.

    All validation happens before anything is written.

    Raises:
        InvalidInputError: bad amount, type, category, date or account
    """
    value = parse_amount(amount)

    try:
        ttype = TransactionType(transaction_type)
    except ValueError:
        raise InvalidInputError("Transaction type must be 'credit' or 'debit'")

    if not category or not isinstance(category, str):
        raise InvalidInputError("Category is required")
    category = category.lower()
    if category not in VALID_CATEGORIES:
        raise InvalidInputError(f"Unknown category '{category}'")

    if transaction_date is None:
        raise InvalidInputError("Transaction date is required")
    when = _as_datetime(transaction_date)

    if account_id is not None:
        result = await db.execute(
            select(BankAccount.id).where(
                BankAccount.id == account_id,
                BankAccount.user_id == user_id,
                BankAccount.deleted_at.is_(None),
            )
        )
        if result.scalar_one_or_none() is None:
            raise InvalidInputError("Invalid account")

    transaction = Transaction(
        user_id=user_id,
        account_id=account_id,
        external_transaction_id=None,
        amount=value,
        currency=currency,
        transaction_type=ttype,
        category=category,
        category_group="Income" if category in INCOME_CATEGORIES else "Expense",
        description=description or None,
        merchant_name=merchant_name or None,
        transaction_date=when,
        booking_date=when,
        is_manual=True,
    )
    db.add(transaction)
    await db.flush()
    await db.refresh(transaction)

    logger.info(f"Created manual transaction {transaction.id} for user {user_id}")
    return transaction


async def list_transactions(
    db: AsyncSession,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    start_date: date | None = None,
    end_date: date | None = None,
    category: str | None = None,
    account_id: UUID | None = None,
) -> TransactionPage:
    """Non-deleted transactions, newest first."""
    conditions = [
        Transaction.user_id == user_id,
        Transaction.deleted_at.is_(None),
    ]
    if start_date:
        conditions.append(Transaction.transaction_date >= _as_datetime(start_date))
    if end_date:
        # end_date is inclusive
        conditions.append(Transaction.transaction_date < _as_datetime(end_date) + timedelta(days=1))
    if category:
        conditions.append(Transaction.category == category.lower())
    if account_id:
        conditions.append(Transaction.account_id == account_id)

    where_clause = and_(*conditions)

    count_result = await db.execute(
        select(func.count(Transaction.id)).where(where_clause)
    )
    total = count_result.scalar_one()

    result = await db.execute(
        select(Transaction)
        .where(where_clause)
        .order_by(Transaction.transaction_date.desc(), Transaction.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return TransactionPage(items=list(result.scalars().all()), total=total, limit=limit, offset=offset)


async def list_accounts(db: AsyncSession, user_id: str) -> list[BankAccount]:
    """Accounts under the user's live connections."""
    result = await db.execute(
        select(BankAccount)
        .join(BankConnection, BankAccount.connection_id == BankConnection.id)
        .where(
            BankAccount.user_id == user_id,
            BankAccount.deleted_at.is_(None),
            BankConnection.deleted_at.is_(None),
            BankConnection.status.in_([ConnectionStatus.ACTIVE, ConnectionStatus.EXPIRED]),
        )
        .order_by(BankAccount.created_at)
    )
    return list(result.scalars().all())
