"""
Consent lifecycle (PDPL/BOBF): grant, revoke, list and scheduled expiry.

Revoking a bank_access consent tears down the bank connections it covers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core import config
from finsync.core.errors import NotFoundError, ConflictError, InvalidInputError
from finsync.models.banking import BankConnection
from finsync.models.compliance import Consent, ConsentType, ConsentStatus
from finsync.services.audit import AuditLogger, AuditEvent
from finsync.services.connections import revoke_at_gateway, soft_delete_connection
from finsync.utils.timezone import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentExpiryReport:
    expired: int
    expiring_soon: int


def _parse_consent_type(value: str) -> ConsentType:
    try:
        return ConsentType(value)
    except ValueError:
        valid = ", ".join(t.value for t in ConsentType)
        raise InvalidInputError(f"Invalid consent_type. Must be one of: {valid}")


async def _active_consent(
    db: AsyncSession,
    user_id: str,
    ctype: ConsentType,
    provider: str,
) -> Consent | None:
    result = await db.execute(
        select(Consent).where(
            Consent.user_id == user_id,
            Consent.consent_type == ctype,
            Consent.provider_id == provider,
            Consent.status == ConsentStatus.ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def grant_consent(
    db: AsyncSession,
    user_id: str,
    consent_type: str,
    permissions: list[str],
    purpose: str,
    audit: AuditLogger,
    provider_id: str | None = None,
    provider_name: str | None = None,
    external_consent_id: str | None = None,
    expires_in_days: int | None = None,
    version: str = "1.0",
) -> tuple[Consent, bool]:
    """
    Record a consent, updating the active one of the same scope if present.

    Returns:
        (consent, created) where created is False when an existing record was updated
    """
    ctype = _parse_consent_type(consent_type)
    if not permissions:
        raise InvalidInputError("permissions are required")
    if not purpose or not purpose.strip():
        raise InvalidInputError("purpose is required")

    days = config.CONSENT_DEFAULT_EXPIRY_DAYS if expires_in_days is None else expires_in_days
    if days <= 0:
        raise InvalidInputError("expires_in_days must be positive")

    now = utcnow()
    expires_at = now + timedelta(days=days)
    provider = provider_id or ""

    consent = await _active_consent(db, user_id, ctype, provider)
    created = consent is None

    if created:
        try:
            # uq_consents_active_scope rejects a concurrent grant for the same scope
            async with db.begin_nested():
                consent = Consent(
                    user_id=user_id,
                    consent_type=ctype,
                    provider_id=provider,
                    provider_name=provider_name,
                    external_consent_id=external_consent_id,
                    purpose=purpose,
                    permissions=list(permissions),
                    status=ConsentStatus.ACTIVE,
                    version=version,
                    granted_at=now,
                    expires_at=expires_at,
                )
                db.add(consent)
                await db.flush()
        except IntegrityError:
            logger.info(f"Concurrent {ctype.value} grant for user {user_id}, updating the winner")
            consent = await _active_consent(db, user_id, ctype, provider)
            if consent is None:
                raise
            created = False

    if not created:
        consent.permissions = list(permissions)
        consent.purpose = purpose
        consent.expires_at = expires_at
        consent.version = version
        if provider_name:
            consent.provider_name = provider_name
        if external_consent_id:
            consent.external_consent_id = external_consent_id

    await db.flush()
    await db.refresh(consent)

    await audit.log(
        AuditEvent(
            user_id=user_id,
            action_type="consent_given",
            resource_type="consent",
            resource_id=str(consent.id),
            request_method="POST",
            response_status=201 if created else 200,
            request_details={
                "action": "created" if created else "updated",
                "consent_type": ctype.value,
                "provider_id": provider_id,
                "permissions_granted": list(permissions),
                "expires_at": expires_at.isoformat(),
            },
        )
    )
    return consent, created


async def list_consents(
    db: AsyncSession,
    user_id: str,
    status: str | None = None,
    consent_type: str | None = None,
) -> list[Consent]:
    query = select(Consent).where(Consent.user_id == user_id)
    if status and status != "all":
        try:
            query = query.where(Consent.status == ConsentStatus(status))
        except ValueError:
            raise InvalidInputError(f"Invalid status '{status}'")
    if consent_type:
        query = query.where(Consent.consent_type == _parse_consent_type(consent_type))

    result = await db.execute(query.order_by(Consent.granted_at.desc()))
    return list(result.scalars().all())


async def revoke_consent(
    db: AsyncSession,
    user_id: str,
    consent_id: UUID,
    audit: AuditLogger,
    engine=None,
    reason: str | None = None,
) -> Consent:
    """
    Withdraw a consent.

    For bank_access, the connections it covers are revoked and soft-deleted
    with their accounts and transactions. The gateway is told best-effort
    when an engine is supplied.
    """
    result = await db.execute(
        select(Consent).where(Consent.id == consent_id, Consent.user_id == user_id)
    )
    consent = result.scalar_one_or_none()
    if not consent:
        raise NotFoundError("Consent not found")
    if consent.status == ConsentStatus.REVOKED:
        raise ConflictError("Consent already revoked")

    now = utcnow()
    consent.status = ConsentStatus.REVOKED
    consent.revoked_at = now
    consent.revocation_reason = reason or "User requested revocation"
    await db.flush()

    revoked_connections = 0
    if consent.consent_type == ConsentType.BANK_ACCESS:
        query = select(BankConnection).where(
            BankConnection.user_id == user_id,
            BankConnection.deleted_at.is_(None),
        )
        if consent.provider_id:
            query = query.where(
                or_(
                    BankConnection.consent_id == consent.id,
                    BankConnection.institution_id == consent.provider_id,
                )
            )
        connections = (await db.execute(query)).scalars().all()

        for connection in connections:
            if engine is not None:
                await revoke_at_gateway(db, engine, connection)
            await soft_delete_connection(db, connection.id)
            revoked_connections += 1

    await audit.log(
        AuditEvent(
            user_id=user_id,
            action_type="consent_revoked",
            resource_type="consent",
            resource_id=str(consent.id),
            request_method="DELETE",
            response_status=200,
            request_details={
                "consent_type": consent.consent_type.value,
                "provider_id": consent.provider_id or None,
                "reason": consent.revocation_reason,
                "connections_revoked": revoked_connections,
            },
        )
    )
    logger.info(f"Consent {consent.id} revoked for user {user_id} ({revoked_connections} connections)")
    return consent


async def expire_consents(
    db: AsyncSession,
    audit: AuditLogger,
    now: datetime | None = None,
) -> ConsentExpiryReport:
    """Mark active consents past expiry as expired and count those expiring soon."""
    now = now or utcnow()

    result = await db.execute(
        select(Consent).where(
            Consent.status == ConsentStatus.ACTIVE,
            Consent.expires_at.is_not(None),
            Consent.expires_at < now,
        )
    )
    expired = result.scalars().all()

    if expired:
        await db.execute(
            update(Consent)
            .where(Consent.id.in_([c.id for c in expired]))
            .values(status=ConsentStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    for consent in expired:
        await audit.log(
            AuditEvent(
                user_id=consent.user_id,
                action_type="consent_expired",
                resource_type="consent",
                resource_id=str(consent.id),
                performed_by="cron",
                request_path="/api/v1/jobs/expire-consents",
                request_details={
                    "consent_type": consent.consent_type.value,
                    "provider_name": consent.provider_name,
                },
                response_status=200,
            )
        )

    warning_cutoff = now + timedelta(days=config.CONSENT_EXPIRY_WARNING_DAYS)
    soon_result = await db.execute(
        select(Consent.expires_at).where(
            Consent.status == ConsentStatus.ACTIVE,
            Consent.expires_at.is_not(None),
            Consent.expires_at >= now,
            Consent.expires_at <= warning_cutoff,
        )
    )
    expiring_soon = len(soon_result.all())

    logger.info(f"Consent expiry job: {len(expired)} expired, {expiring_soon} expiring within {config.CONSENT_EXPIRY_WARNING_DAYS} days")
    return ConsentExpiryReport(expired=len(expired), expiring_soon=expiring_soon)
