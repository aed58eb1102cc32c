"""Budget and savings goal views derived from stored transactions and contributions."""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from uuid import UUID

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import NotFoundError, PermissionDeniedError, ConflictError, InvalidInputError
from finsync.models.banking import Transaction, TransactionType
from finsync.models.planning import (
    Budget,
    BudgetPeriod,
    SavingsGoal,
    GoalScope,
    FamilyGroup,
    FamilyMember,
    FamilyGoalMember,
    ContributionHistory,
    MemberStatus,
)
from finsync.services.categorizer import VALID_CATEGORIES
from finsync.utils.timezone import utcnow, today_utc

logger = logging.getLogger(__name__)

Q1 = Decimal("1")
ZERO = Decimal("0")


def _to_dec(v) -> Decimal:
    return Decimal(str(v))


def round_half_up(x: Decimal) -> int:
    return int(x.quantize(Q1, rounding=ROUND_HALF_UP))


def parse_amount(value) -> Decimal:
    """Validate a money amount: finite and strictly positive."""
    try:
        amount = _to_dec(value)
    except (ArithmeticError, ValueError, TypeError):
        raise InvalidInputError("Amount must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidInputError("Amount must be a positive number")
    return amount


@dataclass(frozen=True)
class BudgetProgress:
    spent: Decimal
    remaining: Decimal
    percentage: int


@dataclass(frozen=True)
class BudgetWithSpending:
    budget: Budget
    progress: BudgetProgress


@dataclass(frozen=True)
class GoalProgress:
    percentage: int
    remaining: Decimal
    days_remaining: int | None


@dataclass(frozen=True)
class ContributionResult:
    goal: SavingsGoal
    progress: GoalProgress
    contributor_id: str
    amount: Decimal
    on_behalf: bool
    just_completed: bool


def budget_progress(amount, spent) -> BudgetProgress:
    amount = _to_dec(amount)
    spent = _to_dec(spent)
    remaining = max(ZERO, amount - spent)
    if amount <= 0:
        percentage = 0
    else:
        percentage = round_half_up(spent / amount * 100)
    return BudgetProgress(spent=spent, remaining=remaining, percentage=percentage)


def period_start(period: BudgetPeriod, today: date) -> date:
    if period == BudgetPeriod.WEEKLY:
        return today - timedelta(days=today.weekday())
    if period == BudgetPeriod.YEARLY:
        return today.replace(month=1, day=1)
    return today.replace(day=1)


def period_end(period: BudgetPeriod, today: date) -> date:
    """First day of the following period, exclusive bound for period_start."""
    start = period_start(period, today)
    if period == BudgetPeriod.WEEKLY:
        return start + timedelta(days=7)
    if period == BudgetPeriod.YEARLY:
        return start.replace(year=start.year + 1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def goal_progress(current, target, target_date: date | None, today: date) -> GoalProgress:
    current = _to_dec(current)
    target = _to_dec(target)
    if target <= 0:
        percentage = 100 if current > 0 else 0
    else:
        percentage = min(100, round_half_up(current / target * 100))

    days_remaining = None
    if target_date is not None:
        days_remaining = math.ceil((target_date - today) / timedelta(days=1))

    return GoalProgress(
        percentage=percentage,
        remaining=max(ZERO, target - current),
        days_remaining=days_remaining,
    )


def _start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


async def spending_by_category(
    db: AsyncSession,
    user_id: str,
    start: datetime,
    end: datetime | None = None,
) -> dict[str, Decimal]:
    """Sum of debit amounts per category in [start, end)."""
    conditions = [
        Transaction.user_id == user_id,
        Transaction.transaction_type == TransactionType.DEBIT,
        Transaction.deleted_at.is_(None),
        Transaction.transaction_date >= start,
    ]
    if end is not None:
        conditions.append(Transaction.transaction_date < end)

    result = await db.execute(
        select(Transaction.category, func.sum(func.abs(Transaction.amount)))
        .where(and_(*conditions))
        .group_by(Transaction.category)
    )
    return {category: _to_dec(total or 0) for category, total in result.all()}


async def get_budgets_with_spending(
    db: AsyncSession,
    user_id: str,
    today: date | None = None,
) -> list[BudgetWithSpending]:
    today = today or today_utc()

    result = await db.execute(
        select(Budget)
        .where(Budget.user_id == user_id, Budget.is_active == True)
        .order_by(Budget.category)
    )
    budgets = result.scalars().all()

    # One aggregate per distinct period
    spending_by_period: dict[BudgetPeriod, dict[str, Decimal]] = {}
    items = []
    for budget in budgets:
        if budget.period not in spending_by_period:
            start = _start_of_day(period_start(budget.period, today))
            end = _start_of_day(period_end(budget.period, today))
            spending_by_period[budget.period] = await spending_by_category(db, user_id, start, end)
        spent = spending_by_period[budget.period].get(budget.category, ZERO)
        items.append(BudgetWithSpending(budget=budget, progress=budget_progress(budget.amount, spent)))
    return items


async def create_or_update_budget(
    db: AsyncSession,
    user_id: str,
    category: str,
    amount,
    period: BudgetPeriod = BudgetPeriod.MONTHLY,
    currency: str = "BHD",
    start_date: date | None = None,
) -> Budget:
    """One budget per (user, category, period); setting it again replaces the amount."""
    if category not in VALID_CATEGORIES:
        raise InvalidInputError(f"Unknown category '{category}'")
    amount = parse_amount(amount)

    result = await db.execute(
        select(Budget).where(
            Budget.user_id == user_id,
            Budget.category == category,
            Budget.period == period,
        )
    )
    budget = result.scalar_one_or_none()

    if budget:
        budget.amount = amount
        budget.currency = currency
        budget.is_active = True
        if start_date is not None:
            budget.start_date = start_date
    else:
        budget = Budget(
            user_id=user_id,
            category=category,
            amount=amount,
            currency=currency,
            period=period,
            start_date=start_date,
        )
        db.add(budget)

    await db.flush()
    await db.refresh(budget)
    return budget


async def _active_member(db: AsyncSession, group_id: UUID, user_id: str) -> FamilyMember | None:
    result = await db.execute(
        select(FamilyMember).where(
            FamilyMember.group_id == group_id,
            FamilyMember.user_id == user_id,
            FamilyMember.status == MemberStatus.ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def _can_access_goal(db: AsyncSession, goal: SavingsGoal, user_id: str) -> bool:
    if goal.scope == GoalScope.PERSONAL:
        return goal.user_id == user_id
    group = await db.get(FamilyGroup, goal.family_group_id)
    if group is None:
        return False
    if group.owner_user_id == user_id:
        return True
    return await _active_member(db, group.id, user_id) is not None


async def create_savings_goal(
    db: AsyncSession,
    user_id: str,
    name: str,
    target_amount,
    currency: str = "BHD",
    target_date: date | None = None,
    description: str | None = None,
    family_group_id: UUID | None = None,
) -> SavingsGoal:
    """Create a personal goal, or a family goal when a group is given."""
    if not name or not name.strip():
        raise InvalidInputError("Goal name is required")
    target = parse_amount(target_amount)

    scope = GoalScope.PERSONAL
    if family_group_id is not None:
        group = await db.get(FamilyGroup, family_group_id)
        if group is None:
            raise NotFoundError("Family group not found")
        if group.owner_user_id != user_id and await _active_member(db, group.id, user_id) is None:
            raise PermissionDeniedError("Not in a family group")
        scope = GoalScope.FAMILY

    goal = SavingsGoal(
        user_id=user_id,
        name=name.strip(),
        description=description,
        target_amount=target,
        current_amount=ZERO,
        currency=currency,
        target_date=target_date,
        scope=scope,
        family_group_id=family_group_id,
    )
    db.add(goal)
    await db.flush()
    await db.refresh(goal)
    return goal


async def contribute(
    db: AsyncSession,
    goal_id: UUID,
    user_id: str,
    amount,
    on_behalf_of: str | None = None,
    note: str | None = None,
    today: date | None = None,
) -> ContributionResult:
    """
    Add money to a savings goal.

    The increment, completion flag, history row and per-member total are
    written together in one savepoint.

    Raises:
        InvalidInputError: amount not positive, or on-behalf target not an active member
        NotFoundError: goal missing or not visible to the user
        PermissionDeniedError: on-behalf contribution by someone other than the group owner
        ConflictError: family goal already completed
    """
    amount = parse_amount(amount)

    goal = await db.get(SavingsGoal, goal_id)
    if goal is None or not await _can_access_goal(db, goal, user_id):
        raise NotFoundError("Goal not found")

    contributor_id = user_id
    on_behalf = bool(on_behalf_of) and on_behalf_of != user_id

    if goal.scope == GoalScope.FAMILY:
        if on_behalf:
            group = await db.get(FamilyGroup, goal.family_group_id)
            if group.owner_user_id != user_id:
                raise PermissionDeniedError("Only family owner can contribute on behalf of others")
            if await _active_member(db, group.id, on_behalf_of) is None:
                raise InvalidInputError("Target member is not in your family group")
            contributor_id = on_behalf_of
        if goal.is_completed:
            raise ConflictError("Goal is already completed")
    elif on_behalf:
        raise InvalidInputError("Personal goals cannot receive contributions on behalf of others")

    now = utcnow()
    async with db.begin_nested():
        await db.execute(
            update(SavingsGoal)
            .where(SavingsGoal.id == goal_id)
            .values(
                current_amount=SavingsGoal.current_amount + amount,
                is_completed=(SavingsGoal.current_amount + amount) >= SavingsGoal.target_amount,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if goal.scope == GoalScope.FAMILY:
            member_result = await db.execute(
                select(FamilyGoalMember).where(
                    FamilyGoalMember.goal_id == goal_id,
                    FamilyGoalMember.user_id == contributor_id,
                )
            )
            member = member_result.scalar_one_or_none()
            if member:
                await db.execute(
                    update(FamilyGoalMember)
                    .where(FamilyGoalMember.id == member.id)
                    .values(
                        contributed_amount=FamilyGoalMember.contributed_amount + amount,
                        last_contribution_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            else:
                db.add(
                    FamilyGoalMember(
                        goal_id=goal_id,
                        user_id=contributor_id,
                        contributed_amount=amount,
                        last_contribution_at=now,
                    )
                )

        db.add(
            ContributionHistory(
                goal_id=goal_id,
                user_id=contributor_id,
                recorded_by=user_id,
                amount=amount,
                currency=goal.currency or "BHD",
                note=note,
                created_at=now,
            )
        )
        await db.flush()

    was_completed = goal.is_completed
    await db.refresh(goal)

    logger.info(f"Contribution of {amount} to goal {goal_id} by {contributor_id} (recorded by {user_id})")
    return ContributionResult(
        goal=goal,
        progress=goal_progress(goal.current_amount, goal.target_amount, goal.target_date, today or today_utc()),
        contributor_id=contributor_id,
        amount=amount,
        on_behalf=on_behalf,
        just_completed=goal.is_completed and not was_completed,
    )


async def list_contribution_history(
    db: AsyncSession,
    goal_id: UUID,
    user_id: str,
    limit: int = 50,
) -> list[ContributionHistory]:
    goal = await db.get(SavingsGoal, goal_id)
    if goal is None or not await _can_access_goal(db, goal, user_id):
        raise NotFoundError("Goal not found")

    result = await db.execute(
        select(ContributionHistory)
        .where(ContributionHistory.goal_id == goal_id)
        .order_by(ContributionHistory.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_savings_goals(db: AsyncSession, user_id: str) -> list[SavingsGoal]:
    """Personal goals plus family goals of every group the user belongs to."""
    member_groups = select(FamilyMember.group_id).where(
        FamilyMember.user_id == user_id,
        FamilyMember.status == MemberStatus.ACTIVE,
    )
    owned_groups = select(FamilyGroup.id).where(FamilyGroup.owner_user_id == user_id)

    result = await db.execute(
        select(SavingsGoal)
        .where(
            (
                (SavingsGoal.scope == GoalScope.PERSONAL) & (SavingsGoal.user_id == user_id)
            )
            | (
                (SavingsGoal.scope == GoalScope.FAMILY)
                & (
                    SavingsGoal.family_group_id.in_(member_groups)
                    | SavingsGoal.family_group_id.in_(owned_groups)
                )
            )
        )
        .order_by(SavingsGoal.created_at)
    )
    return list(result.scalars().all())
