"""Scheduled job endpoints, called by Cloud Scheduler with X-API-Key."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.database import get_db
from finsync.core.dependencies import get_audit, get_sync_engine
from finsync.core.middleware import require_cron_key
from finsync.services import consents as consent_service
from finsync.services.audit import AuditLogger
from finsync.services.retention import run_data_retention
from finsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_cron_key)])


class SyncBanksResponse(BaseModel):
    """Response from the scheduled bank sync."""
    users_processed: int
    accounts_updated: int
    transactions_added: int
    transactions_updated: int
    skipped: int
    errors: list[str]


class ExpireConsentsResponse(BaseModel):
    expired: int
    expiring_soon: int


class DataRetentionResponse(BaseModel):
    transactions_anonymized: int
    transactions_deleted: int
    accounts_deleted: int
    connections_deleted: int


@router.post("/sync-banks", response_model=SyncBanksResponse)
async def sync_banks(
    engine: SyncEngine = Depends(get_sync_engine),
) -> SyncBanksResponse:
    """
    Sync every connection with an account not synced within the skip window.

    Users are processed in rate-limited batches.
    """
    try:
        summary = await engine.sync_stale_connections()
    except Exception as e:
        logger.exception("Scheduled bank sync failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Bank sync failed: {str(e)}",
        )
    return SyncBanksResponse(
        users_processed=summary.users_processed,
        accounts_updated=summary.accounts_updated,
        transactions_added=summary.transactions_added,
        transactions_updated=summary.transactions_updated,
        skipped=summary.skipped,
        errors=summary.errors,
    )


@router.post("/expire-consents", response_model=ExpireConsentsResponse)
async def expire_consents(
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> ExpireConsentsResponse:
    report = await consent_service.expire_consents(db, audit)
    return ExpireConsentsResponse(expired=report.expired, expiring_soon=report.expiring_soon)


@router.post("/data-retention", response_model=DataRetentionResponse)
async def data_retention(
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> DataRetentionResponse:
    """Anonymize data after consent revocation and purge expired soft-deleted rows."""
    report = await run_data_retention(db, audit)
    return DataRetentionResponse(
        transactions_anonymized=report.transactions_anonymized,
        transactions_deleted=report.transactions_deleted,
        accounts_deleted=report.accounts_deleted,
        connections_deleted=report.connections_deleted,
    )
