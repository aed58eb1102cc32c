"""Data retention job: anonymize after consent revocation, purge old soft-deleted rows."""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core import config
from finsync.models.banking import BankConnection, BankAccount, Transaction
from finsync.models.compliance import Consent, ConsentStatus
from finsync.services.audit import AuditLogger, AuditEvent
from finsync.utils.timezone import utcnow

logger = logging.getLogger(__name__)

ANONYMIZED_DESCRIPTION = "[ANONYMIZED]"


@dataclass
class RetentionReport:
    transactions_anonymized: int = 0
    transactions_deleted: int = 0
    accounts_deleted: int = 0
    connections_deleted: int = 0


async def run_data_retention(
    db: AsyncSession,
    audit: AuditLogger,
    now: datetime | None = None,
    retention_days: int = config.DATA_RETENTION_DAYS,
    grace_days: int = config.SOFT_DELETE_GRACE_DAYS,
) -> RetentionReport:
    """
    Apply retention rules.

    1. Transactions under connections whose consent was revoked more than
       retention_days ago lose their description and merchant details.
    2. Transactions, accounts and connections soft-deleted more than
       grace_days ago are removed.
    """
    now = now or utcnow()
    report = RetentionReport()

    revoked_before = now - timedelta(days=retention_days)
    revoked_consents = select(Consent.id).where(
        Consent.status == ConsentStatus.REVOKED,
        Consent.revoked_at < revoked_before,
    )
    affected_accounts = (
        select(BankAccount.id)
        .join(BankConnection, BankAccount.connection_id == BankConnection.id)
        .where(BankConnection.consent_id.in_(revoked_consents))
    )
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.account_id.in_(affected_accounts),
            Transaction.is_anonymized == False,
        )
        .values(
            description=ANONYMIZED_DESCRIPTION,
            merchant_name=None,
            merchant_logo=None,
            is_anonymized=True,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    report.transactions_anonymized = result.rowcount or 0

    purge_before = now - timedelta(days=grace_days)
    result = await db.execute(
        delete(Transaction)
        .where(Transaction.deleted_at < purge_before)
        .execution_options(synchronize_session=False)
    )
    report.transactions_deleted = result.rowcount or 0

    result = await db.execute(
        delete(BankAccount)
        .where(BankAccount.deleted_at < purge_before)
        .execution_options(synchronize_session=False)
    )
    report.accounts_deleted = result.rowcount or 0

    result = await db.execute(
        delete(BankConnection)
        .where(BankConnection.deleted_at < purge_before)
        .execution_options(synchronize_session=False)
    )
    report.connections_deleted = result.rowcount or 0

    await audit.log(
        AuditEvent(
            user_id=None,
            action_type="data_delete",
            resource_type="transaction",
            performed_by="cron",
            request_path="/api/v1/jobs/data-retention",
            request_details={"job": "data-retention", **asdict(report)},
            response_status=200,
        )
    )
    logger.info(f"Data retention completed: {report}")
    return report
