"""
Bank data consent verification (PDPL/BOBF).

Every read of financial data goes through check_bank_access_consent, and
require_bank_consent records an audit row for both outcomes.
"""

import time
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.models.banking import BankConnection, ConnectionStatus
from finsync.models.compliance import Consent, ConsentType, ConsentStatus
from finsync.services.audit import AuditLogger
from finsync.utils.timezone import utcnow, as_utc

logger = logging.getLogger(__name__)


class ConsentCode(str, Enum):
    NO_CONSENT = "NO_CONSENT"
    CONSENT_EXPIRED = "CONSENT_EXPIRED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    CHECK_FAILED = "CHECK_FAILED"


@dataclass(frozen=True)
class ConsentAllowed:
    consent_id: UUID | None = None
    expires_at: datetime | None = None
    no_banks_connected: bool = False  # callers return empty data

    allowed = True


@dataclass(frozen=True)
class ConsentDenied:
    code: ConsentCode
    message: str
    requires_consent: bool = True

    allowed = False


ConsentResult = ConsentAllowed | ConsentDenied


async def _has_bank_connections(db: AsyncSession, user_id: str) -> bool:
    result = await db.execute(
        select(func.count(BankConnection.id)).where(
            BankConnection.user_id == user_id,
            BankConnection.status.in_([ConnectionStatus.ACTIVE, ConnectionStatus.PENDING]),
            BankConnection.deleted_at.is_(None),
        )
    )
    return (result.scalar_one() or 0) > 0


async def check_bank_access_consent(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> ConsentResult:
    """
    Decide whether the user's financial data may be released.

    A user without connections is allowed with no_banks_connected set.
    Otherwise the newest bank_access consent decides: active and unexpired
    allows, revoked or expired denies, and no record at all denies NO_CONSENT.
    """
    now = now or utcnow()
    try:
        if not await _has_bank_connections(db, user_id):
            return ConsentAllowed(no_banks_connected=True)

        result = await db.execute(
            select(Consent)
            .where(
                Consent.user_id == user_id,
                Consent.consent_type == ConsentType.BANK_ACCESS,
                Consent.status == ConsentStatus.ACTIVE,
            )
            .order_by(Consent.granted_at.desc())
        )
        for consent in result.scalars().all():
            expires_at = as_utc(consent.expires_at)
            if expires_at is None or expires_at > now:
                return ConsentAllowed(consent_id=consent.id, expires_at=expires_at)

        result = await db.execute(
            select(Consent)
            .where(
                Consent.user_id == user_id,
                Consent.consent_type == ConsentType.BANK_ACCESS,
            )
            .order_by(Consent.granted_at.desc())
            .limit(1)
        )
        latest = result.scalar_one_or_none()
    except SQLAlchemyError:
        logger.exception(f"Consent check failed for user {user_id}")
        return ConsentDenied(
            code=ConsentCode.CHECK_FAILED,
            message="Failed to verify consent status",
            requires_consent=False,
        )

    if latest is not None:
        if latest.status == ConsentStatus.REVOKED:
            return ConsentDenied(
                code=ConsentCode.CONSENT_REVOKED,
                message="Your bank data consent has been revoked. Please reconnect your bank to continue.",
            )
        latest_expiry = as_utc(latest.expires_at)
        if latest.status == ConsentStatus.EXPIRED or (latest_expiry is not None and latest_expiry <= now):
            return ConsentDenied(
                code=ConsentCode.CONSENT_EXPIRED,
                message="Your bank data consent has expired. Please renew your consent to continue.",
            )

    return ConsentDenied(
        code=ConsentCode.NO_CONSENT,
        message="Bank access authorization required. Please reconnect your bank.",
    )


async def require_bank_consent(
    db: AsyncSession,
    user_id: str,
    resource_type: str,
    request_path: str | None,
    audit: AuditLogger,
    request_method: str = "GET",
) -> ConsentResult:
    """Check consent and audit the outcome; denials are returned, not raised."""
    started = time.monotonic()
    result = await check_bank_access_consent(db, user_id)
    duration_ms = int((time.monotonic() - started) * 1000)

    if isinstance(result, ConsentDenied):
        await audit.log_data_access(
            user_id=user_id,
            resource_type=resource_type,
            request_path=request_path,
            response_status=503 if result.code == ConsentCode.CHECK_FAILED else 403,
            response_details={"denied": True, "reason": result.code.value},
            duration_ms=duration_ms,
            request_method=request_method,
        )
        return result

    details = {"consentId": str(result.consent_id)} if result.consent_id else {"noBanksConnected": True}
    await audit.log_data_access(
        user_id=user_id,
        resource_type=resource_type,
        request_path=request_path,
        response_status=200,
        response_details=details,
        duration_ms=duration_ms,
        request_method=request_method,
    )
    return result
