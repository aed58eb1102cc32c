"""Bank connection, account and transaction models."""

import uuid
import enum
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    String,
    Text,
    DateTime,
    Numeric,
    Boolean,
    ForeignKey,
    Index,
    Enum,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from finsync.core.database import Base


class ConnectionStatus(str, enum.Enum):
    """Lifecycle of a bank connection."""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"    # credential can no longer be refreshed
    REVOKED = "revoked"    # user disconnect or consent withdrawal


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class BankConnection(Base):
    """
    One linked institution for one user.
    Stores the encrypted gateway access credential and its expiry.
    """
    __tablename__ = "bank_connections"

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
    institution_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    institution_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    # Encrypted using Fernet - NEVER store in plain text
    encrypted_access_token: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    consent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("consents.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[ConnectionStatus] = mapped_column(
        Enum(ConnectionStatus, name="connection_status", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ConnectionStatus.PENDING,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
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

    accounts: Mapped[list["BankAccount"]] = relationship(
        "BankAccount",
        back_populates="connection",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_bank_connections_user_status", "user_id", "status"),
    )


class BankAccount(Base):
    """
    One account under a bank connection.
    `last_synced_at` drives staleness decisions for refresh and scheduled sync.
    """
    __tablename__ = "bank_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("bank_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    # Gateway's account identifier
    external_account_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    account_type: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    account_number_masked: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )
    currency: Mapped[str | None] = mapped_column(
        String(3),
        nullable=True,
    )
    balance: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        nullable=True,
    )
    available_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        nullable=True,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
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

    connection: Mapped["BankConnection"] = relationship(
        "BankConnection",
        back_populates="accounts",
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "external_account_id", name="uq_bank_accounts_connection_external"),
    )


class Transaction(Base):
    """
    One ledger entry, gateway-sourced or entered manually.

    (account_id, external_transaction_id) is the ingestion idempotency key.
    Manual entries have no external id, so the constraint never applies to them.
    """
    __tablename__ = "transactions"

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
    account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("bank_accounts.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    external_transaction_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    provider_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    # Always stored as an absolute value; direction lives in transaction_type
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    currency: Mapped[str | None] = mapped_column(
        String(3),
        nullable=True,
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    # Categorization
    category: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="other",
    )
    category_group: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    category_icon: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    merchant_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    merchant_logo: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    description: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
    )
    # Dates
    transaction_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    booking_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_manual: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    is_anonymized: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Timestamps
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
        UniqueConstraint("account_id", "external_transaction_id", name="uq_transactions_account_external"),
        Index("ix_transactions_user_date", "user_id", "transaction_date"),
        Index("ix_transactions_user_category", "user_id", "category"),
    )
