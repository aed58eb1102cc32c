"""Income and spending insights over synced transactions."""

import asyncio
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.models.banking import BankConnection, Transaction, TransactionType, ConnectionStatus
from finsync.services.aggregator import spending_by_category, round_half_up, ZERO
from finsync.services.gateway import SalaryInfo
from finsync.services.token_manager import persist_refreshed_token
from finsync.utils.timezone import utcnow, as_utc

logger = logging.getLogger(__name__)

SALARY_LOOKBACK_DAYS = 90
SALARY_MIN_CREDIT = Decimal("300")
SALARY_TOLERANCE = Decimal("0.1")
LOCAL_SALARY_CONFIDENCE = 0.6


@dataclass(frozen=True)
class CategorySpend:
    category: str
    amount: Decimal
    percentage: int


@dataclass(frozen=True)
class SpendingSummary:
    total_spending: Decimal
    total_income: Decimal
    categories: list[CategorySpend]


def _add_month(d: datetime) -> datetime:
    year = d.year + (d.month // 12)
    month = d.month % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day)


def detect_salary_from_credits(credits: list[tuple[Decimal, str | None, datetime]]) -> SalaryInfo:
    """
    Heuristic salary detection from (amount, currency, date) credits, newest first.

    Large credits within 10% of their mean, at least two of them, are taken
    as a monthly salary.
    """
    large = [(abs(amount), currency, when) for amount, currency, when in credits if abs(amount) > SALARY_MIN_CREDIT]
    if len(large) < 2:
        return SalaryInfo(detected=False, source="local")

    amounts = [amount for amount, _, _ in large]
    mean = sum(amounts, ZERO) / len(amounts)
    similar = [a for a in amounts if abs(a - mean) / mean < SALARY_TOLERANCE]
    if len(similar) < 2:
        return SalaryInfo(detected=False, source="local")

    _, currency, last_pay = large[0]
    return SalaryInfo(
        detected=True,
        amount=mean.quantize(Decimal("0.01")),
        currency=currency or "BHD",
        frequency="MONTHLY",
        last_pay_date=last_pay.isoformat(),
        next_expected_date=_add_month(last_pay).isoformat(),
        confidence=LOCAL_SALARY_CONFIDENCE,
        source="local",
    )


async def _local_salary(db: AsyncSession, user_id: str, now: datetime) -> SalaryInfo:
    result = await db.execute(
        select(Transaction.amount, Transaction.currency, Transaction.transaction_date)
        .where(
            Transaction.user_id == user_id,
            Transaction.transaction_type == TransactionType.CREDIT,
            Transaction.deleted_at.is_(None),
            Transaction.transaction_date >= now - timedelta(days=SALARY_LOOKBACK_DAYS),
        )
        .order_by(Transaction.transaction_date.desc())
    )
    credits = [(Decimal(str(amount)), currency, as_utc(when)) for amount, currency, when in result.all()]
    return detect_salary_from_credits(credits)


async def detect_salary(
    db: AsyncSession,
    user_id: str,
    engine,
    now: datetime | None = None,
) -> SalaryInfo:
    """
    Salary detection from the gateway, falling back to local transactions.

    The result's source is "gateway" or "local".
    """
    now = now or utcnow()

    result = await db.execute(
        select(BankConnection)
        .where(
            BankConnection.user_id == user_id,
            BankConnection.status == ConnectionStatus.ACTIVE,
            BankConnection.deleted_at.is_(None),
        )
        .order_by(BankConnection.created_at)
        .limit(1)
    )
    connection = result.scalar_one_or_none()

    if connection is not None:
        try:
            timeout = engine.config.gateway_timeout_seconds
            token = await asyncio.wait_for(
                engine.token_manager.get_valid_token(user_id, connection), timeout
            )
            if token.should_update:
                await persist_refreshed_token(db, connection.id, token)
            info = await asyncio.wait_for(engine.gateway.get_salary_info(token.access_token), timeout)
            if info is not None:
                return info
            logger.info(f"No salary endpoint available for user {user_id}, using local detection")
        except Exception as e:
            logger.error(f"Failed to fetch salary info for user {user_id}: {e}")

    return await _local_salary(db, user_id, now)


async def spending_summary(
    db: AsyncSession,
    user_id: str,
    start: datetime,
    end: datetime | None = None,
) -> SpendingSummary:
    """Spending by category with shares of the total, plus total income."""
    by_category = await spending_by_category(db, user_id, start, end)
    total_spending = sum(by_category.values(), ZERO)

    conditions = [
        Transaction.user_id == user_id,
        Transaction.transaction_type == TransactionType.CREDIT,
        Transaction.deleted_at.is_(None),
        Transaction.transaction_date >= start,
    ]
    if end is not None:
        conditions.append(Transaction.transaction_date < end)
    income_result = await db.execute(select(func.sum(func.abs(Transaction.amount))).where(*conditions))
    total_income = Decimal(str(income_result.scalar_one() or 0))

    categories = [
        CategorySpend(
            category=category,
            amount=amount,
            percentage=round_half_up(amount / total_spending * 100) if total_spending > 0 else 0,
        )
        for category, amount in sorted(by_category.items(), key=lambda kv: kv[1], reverse=True)
    ]
    return SpendingSummary(total_spending=total_spending, total_income=total_income, categories=categories)
