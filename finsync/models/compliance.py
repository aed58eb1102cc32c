"""Consent and audit models for PDPL/BOBF compliance."""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import String, Text, DateTime, Integer, JSON, Index, Enum, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from finsync.core.database import Base


class ConsentType(str, enum.Enum):
    BANK_ACCESS = "bank_access"
    AI_DATA = "ai_data"
    MARKETING = "marketing"
    TERMS_OF_SERVICE = "terms_of_service"
    PRIVACY_POLICY = "privacy_policy"


class ConsentStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class Consent(Base):
    """
    A user's grant of a specific consent type, scoped to a provider.

    At most one active consent exists per (user, type, provider); granting
    again updates the active record instead of inserting a new one.
    """
    __tablename__ = "consents"

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
    consent_type: Mapped[ConsentType] = mapped_column(
        Enum(ConsentType, name="consent_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    # Empty string when the consent is not provider-specific
    provider_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    provider_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    # Consent identifier on the gateway side, used for revocation
    external_consent_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    purpose: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    permissions: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    status: Mapped[ConsentStatus] = mapped_column(
        Enum(ConsentStatus, name="consent_status", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ConsentStatus.ACTIVE,
    )
    version: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="1.0",
    )
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    revocation_reason: Mapped[str | None] = mapped_column(
        Text,
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
        Index("ix_consents_user_type_status", "user_id", "consent_type", "status"),
        Index(
            "uq_consents_active_scope",
            "user_id",
            "consent_type",
            "provider_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class AuditLog(Base):
    """
    Immutable audit trail for financial data access and modifications.

    Rows are only ever inserted.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    action_type: Mapped[str] = mapped_column(
        String(50),  # "data_access", "consent_revoked", "bank_synced", ...
        nullable=False,
        index=True,
    )
    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    resource_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    performed_by: Mapped[str] = mapped_column(
        String(20),  # "user", "system", "webhook", "cron"
        nullable=False,
        default="user",
    )
    request_method: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    request_path: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    request_details: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    response_status: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    response_details: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    duration_ms: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_audit_logs_user_time", "user_id", "created_at"),
    )
