"""Budgets, savings goals and family goal sharing."""

import uuid
import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    String,
    Text,
    Date,
    DateTime,
    Numeric,
    Boolean,
    ForeignKey,
    Index,
    Enum,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from finsync.core.database import Base


class BudgetPeriod(str, enum.Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class GoalScope(str, enum.Enum):
    PERSONAL = "personal"
    FAMILY = "family"


class MemberStatus(str, enum.Enum):
    INVITED = "invited"
    ACTIVE = "active"
    REMOVED = "removed"


class MemberRole(str, enum.Enum):
    OWNER = "owner"
    MEMBER = "member"


class Budget(Base):
    """
    Spending limit for one category over a recurring period.
    Spent, remaining and percentage are derived at read time.
    """
    __tablename__ = "budgets"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    category: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="BHD",
    )
    period: Mapped[BudgetPeriod] = mapped_column(
        Enum(BudgetPeriod, name="budget_period", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=BudgetPeriod.MONTHLY,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    start_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "category", "period", name="uq_budgets_user_category_period"),
    )


class FamilyGroup(Base):
    __tablename__ = "family_groups"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    owner_user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class FamilyMember(Base):
    """
    A seat in a family group.

    Invitations are rows with status invited, an email and a one-time token;
    user_id is filled in when the invitation is accepted. A user is an active
    member of at most one group.
    """
    __tablename__ = "family_members"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("family_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    role: Mapped[MemberRole] = mapped_column(
        Enum(MemberRole, name="member_role", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=MemberRole.MEMBER,
    )
    status: Mapped[MemberStatus] = mapped_column(
        Enum(MemberStatus, name="member_status", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=MemberStatus.ACTIVE,
    )
    invited_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    invited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    invitation_token: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
    )
    invitation_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    joined_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index(
            "uq_family_members_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "uq_family_members_pending_email",
            "group_id",
            "email",
            unique=True,
            postgresql_where=text("status = 'invited'"),
            sqlite_where=text("status = 'invited'"),
        ),
    )


class SavingsGoal(Base):
    """
    Savings target, owned by a user or shared with a family group.

    current_amount only changes through contributions, each paired with
    exactly one ContributionHistory row.
    """
    __tablename__ = "savings_goals"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    target_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    current_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="BHD",
    )
    target_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )
    scope: Mapped[GoalScope] = mapped_column(
        Enum(GoalScope, name="goal_scope", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=GoalScope.PERSONAL,
    )
    family_group_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("family_groups.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    is_completed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=True,
    )


class FamilyGoalMember(Base):
    """Per-member cumulative contribution to a family goal."""
    __tablename__ = "family_goal_members"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    goal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("savings_goals.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    contributed_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    last_contribution_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("goal_id", "user_id", name="uq_family_goal_members_goal_user"),
    )


class ContributionHistory(Base):
    """
    Append-only contribution ledger.
    `user_id` is who the money is credited to; `recorded_by` is who entered it.
    """
    __tablename__ = "contribution_history"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    goal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("savings_goals.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    recorded_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="BHD",
    )
    note: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_contribution_history_goal_time", "goal_id", "created_at"),
    )
