"""Finance API endpoints: accounts, transactions, budgets, savings goals and insights."""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.database import get_db
from finsync.core.dependencies import BankConsentGate, get_sync_engine
from finsync.core.errors import FinsyncError
from finsync.core.middleware import get_current_user, TokenData
from finsync.core.ratelimit import rate_limit
from finsync.models.banking import TransactionType
from finsync.models.planning import BudgetPeriod, GoalScope
from finsync.services import aggregator, insights, ledger
from finsync.services.consent_guard import ConsentAllowed
from finsync.services.sync_engine import SyncEngine
from finsync.utils.timezone import utcnow

router = APIRouter(prefix="/finance", tags=["finance"])


class AccountResponse(BaseModel):
    """Bank account with its latest known balance."""
    id: UUID
    connection_id: UUID
    external_account_id: str
    account_type: str | None
    account_number_masked: str | None
    currency: str | None
    balance: Decimal | None
    available_balance: Decimal | None
    last_synced_at: datetime | None

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    """Single transaction response."""
    id: UUID
    account_id: UUID | None
    amount: Decimal
    currency: str | None
    transaction_type: TransactionType
    category: str
    category_group: str | None
    merchant_name: str | None
    description: str | None
    transaction_date: datetime
    is_manual: bool

    class Config:
        from_attributes = True


class PaginatedTransactions(BaseModel):
    """Offset-paginated list of transactions."""
    items: list[TransactionResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class ManualTransactionRequest(BaseModel):
    amount: Decimal
    transaction_type: str
    category: str
    transaction_date: date
    description: str | None = None
    merchant_name: str | None = None
    currency: str = "BHD"
    account_id: UUID | None = None


class BudgetRequest(BaseModel):
    category: str
    amount: Decimal
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    currency: str = "BHD"
    start_date: date | None = None


class BudgetResponse(BaseModel):
    """Budget with spending for its current period."""
    id: UUID
    category: str
    amount: Decimal
    currency: str
    period: BudgetPeriod
    spent: Decimal
    remaining: Decimal
    percentage: int


class SavingsGoalRequest(BaseModel):
    name: str
    target_amount: Decimal
    currency: str = "BHD"
    target_date: date | None = None
    description: str | None = None
    family_group_id: UUID | None = None


class SavingsGoalResponse(BaseModel):
    """Savings goal with progress."""
    id: UUID
    name: str
    description: str | None
    target_amount: Decimal
    current_amount: Decimal
    currency: str
    target_date: date | None
    scope: GoalScope
    family_group_id: UUID | None
    is_completed: bool
    percentage: int
    remaining: Decimal
    days_remaining: int | None


class ContributeRequest(BaseModel):
    amount: Decimal
    on_behalf_of: str | None = None
    note: str | None = None


class ContributeResponse(BaseModel):
    goal: SavingsGoalResponse
    contributor_id: str
    amount: Decimal
    on_behalf: bool
    just_completed: bool


class ContributionResponse(BaseModel):
    id: UUID
    user_id: str
    recorded_by: str
    amount: Decimal
    currency: str
    note: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class CategorySpendResponse(BaseModel):
    category: str
    amount: Decimal
    percentage: int


class SpendingResponse(BaseModel):
    start_date: date
    end_date: date
    total_spending: Decimal
    total_income: Decimal
    categories: list[CategorySpendResponse]


class SalaryResponse(BaseModel):
    detected: bool
    amount: Decimal | None = None
    currency: str | None = None
    employer: str | None = None
    frequency: str | None = None
    last_pay_date: str | None = None
    next_expected_date: str | None = None
    confidence: float | None = None
    source: str


class RefreshResponse(BaseModel):
    sync_type: str
    accounts_updated: int
    transactions_added: int
    transactions_updated: int
    errors: list[str] = Field(default_factory=list)


def _goal_response(goal, today: date) -> SavingsGoalResponse:
    progress = aggregator.goal_progress(goal.current_amount, goal.target_amount, goal.target_date, today)
    return SavingsGoalResponse(
        id=goal.id,
        name=goal.name,
        description=goal.description,
        target_amount=goal.target_amount,
        current_amount=goal.current_amount,
        currency=goal.currency,
        target_date=goal.target_date,
        scope=goal.scope,
        family_group_id=goal.family_group_id,
        is_completed=goal.is_completed,
        percentage=progress.percentage,
        remaining=progress.remaining,
        days_remaining=progress.days_remaining,
    )


def _start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


@router.get("/accounts", response_model=list[AccountResponse])
async def get_accounts(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    consent: ConsentAllowed = Depends(BankConsentGate("account")),
) -> list[AccountResponse]:
    """List the user's bank accounts. Requires active bank access consent."""
    accounts = await ledger.list_accounts(db, user.sub)
    return [AccountResponse.model_validate(a) for a in accounts]


@router.get("/transactions", response_model=PaginatedTransactions)
async def get_transactions(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    consent: ConsentAllowed = Depends(BankConsentGate("transaction")),
    start_date: date | None = Query(None, description="Filter transactions from this date"),
    end_date: date | None = Query(None, description="Filter transactions until this date"),
    category: str | None = Query(None),
    account_id: UUID | None = Query(None),
    limit: int = Query(50, ge=1, le=200, description="Items per page"),
    offset: int = Query(0, ge=0),
) -> PaginatedTransactions:
    """
    Get transactions for the current user, newest first.

    Optional date range filtering via start_date and end_date (both inclusive).
    """
    page = await ledger.list_transactions(
        db,
        user.sub,
        limit=limit,
        offset=offset,
        start_date=start_date,
        end_date=end_date,
        category=category,
        account_id=account_id,
    )
    return PaginatedTransactions(
        items=[TransactionResponse.model_validate(t) for t in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.post(
    "/transactions/manual",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("api"))],
)
async def create_manual_transaction(
    request: ManualTransactionRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> TransactionResponse:
    """Record a cash transaction that no bank reports."""
    try:
        transaction = await ledger.create_manual_transaction(
            db,
            user.sub,
            amount=request.amount,
            transaction_type=request.transaction_type,
            category=request.category,
            transaction_date=request.transaction_date,
            description=request.description,
            merchant_name=request.merchant_name,
            currency=request.currency,
            account_id=request.account_id,
        )
        return TransactionResponse.model_validate(transaction)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/budgets", response_model=list[BudgetResponse])
async def get_budgets(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    consent: ConsentAllowed = Depends(BankConsentGate("budget")),
) -> list[BudgetResponse]:
    """Active budgets with spending in their current period."""
    items = await aggregator.get_budgets_with_spending(db, user.sub)
    return [
        BudgetResponse(
            id=item.budget.id,
            category=item.budget.category,
            amount=item.budget.amount,
            currency=item.budget.currency,
            period=item.budget.period,
            spent=item.progress.spent,
            remaining=item.progress.remaining,
            percentage=item.progress.percentage,
        )
        for item in items
    ]


@router.post("/budgets", response_model=BudgetResponse)
async def set_budget(
    request: BudgetRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> BudgetResponse:
    try:
        budget = await aggregator.create_or_update_budget(
            db,
            user.sub,
            category=request.category,
            amount=request.amount,
            period=request.period,
            currency=request.currency,
            start_date=request.start_date,
        )
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    progress = aggregator.budget_progress(budget.amount, Decimal("0"))
    return BudgetResponse(
        id=budget.id,
        category=budget.category,
        amount=budget.amount,
        currency=budget.currency,
        period=budget.period,
        spent=progress.spent,
        remaining=progress.remaining,
        percentage=progress.percentage,
    )


@router.get("/savings-goals", response_model=list[SavingsGoalResponse])
async def get_savings_goals(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> list[SavingsGoalResponse]:
    """Personal goals and family goals the user can see."""
    today = utcnow().date()
    goals = await aggregator.list_savings_goals(db, user.sub)
    return [_goal_response(g, today) for g in goals]


@router.post("/savings-goals", response_model=SavingsGoalResponse, status_code=status.HTTP_201_CREATED)
async def create_savings_goal(
    request: SavingsGoalRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> SavingsGoalResponse:
    try:
        goal = await aggregator.create_savings_goal(
            db,
            user.sub,
            name=request.name,
            target_amount=request.target_amount,
            currency=request.currency,
            target_date=request.target_date,
            description=request.description,
            family_group_id=request.family_group_id,
        )
        return _goal_response(goal, utcnow().date())
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/savings-goals/{goal_id}/contribute", response_model=ContributeResponse)
async def contribute_to_goal(
    goal_id: UUID,
    request: ContributeRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> ContributeResponse:
    """
    Add money to a savings goal.

    Family group owners may record a contribution on behalf of an active member.
    """
    try:
        result = await aggregator.contribute(
            db,
            goal_id,
            user.sub,
            amount=request.amount,
            on_behalf_of=request.on_behalf_of,
            note=request.note,
        )
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return ContributeResponse(
        goal=_goal_response(result.goal, utcnow().date()),
        contributor_id=result.contributor_id,
        amount=result.amount,
        on_behalf=result.on_behalf,
        just_completed=result.just_completed,
    )


@router.get("/savings-goals/{goal_id}/history", response_model=list[ContributionResponse])
async def get_contribution_history(
    goal_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
) -> list[ContributionResponse]:
    try:
        history = await aggregator.list_contribution_history(db, goal_id, user.sub, limit=limit)
        return [ContributionResponse.model_validate(h) for h in history]
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/spending", response_model=SpendingResponse)
async def get_spending(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    consent: ConsentAllowed = Depends(BankConsentGate("transaction")),
    start_date: date | None = Query(None, description="Defaults to the first day of this month"),
    end_date: date | None = Query(None, description="Inclusive; defaults to today"),
) -> SpendingResponse:
    """Spending by category with each category's share of the total."""
    today = utcnow().date()
    start_date = start_date or today.replace(day=1)
    end_date = end_date or today
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_date must not be before start_date",
        )

    summary = await insights.spending_summary(
        db,
        user.sub,
        _start_of_day(start_date),
        _start_of_day(end_date) + timedelta(days=1),
    )
    return SpendingResponse(
        start_date=start_date,
        end_date=end_date,
        total_spending=summary.total_spending,
        total_income=summary.total_income,
        categories=[
            CategorySpendResponse(category=c.category, amount=c.amount, percentage=c.percentage)
            for c in summary.categories
        ],
    )


@router.get("/insights/salary", response_model=SalaryResponse)
async def get_salary(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    consent: ConsentAllowed = Depends(BankConsentGate("insight")),
    engine: SyncEngine = Depends(get_sync_engine),
) -> SalaryResponse:
    """Detected salary, from the gateway when it can tell, otherwise from local credits."""
    info = await insights.detect_salary(db, user.sub, engine)
    return SalaryResponse(
        detected=info.detected,
        amount=info.amount,
        currency=info.currency,
        employer=info.employer,
        frequency=info.frequency,
        last_pay_date=info.last_pay_date,
        next_expected_date=info.next_expected_date,
        confidence=info.confidence,
        source=info.source,
    )


@router.post("/refresh", response_model=RefreshResponse, dependencies=[Depends(rate_limit("api"))])
async def refresh(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    consent: ConsentAllowed = Depends(BankConsentGate("account")),
    engine: SyncEngine = Depends(get_sync_engine),
) -> RefreshResponse:
    """
    Refresh the user's bank data as far as its age requires.

    Fresh data is left alone; moderately stale data gets balances only.
    """
    try:
        sync_type, result = await engine.smart_refresh(db, user.sub)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to refresh bank data: {str(e)}",
        )
    return RefreshResponse(
        sync_type=sync_type.value,
        accounts_updated=result.accounts_updated,
        transactions_added=result.transactions_added,
        transactions_updated=result.transactions_updated,
        errors=result.errors,
    )
