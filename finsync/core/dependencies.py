"""Dependency injection for services, audit and the bank consent gate."""

from functools import lru_cache

from fastapi import Request, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.database import get_db
from finsync.core.middleware import get_current_user, TokenData
from finsync.services.audit import AuditLogger, get_audit_logger
from finsync.services.consent_guard import (
    ConsentAllowed,
    ConsentCode,
    require_bank_consent,
)
from finsync.services.gateway import GatewayClient
from finsync.services.sync_engine import SyncEngine


@lru_cache
def _audit_logger() -> AuditLogger:
    return get_audit_logger()


async def get_audit() -> AuditLogger:
    return _audit_logger()


@lru_cache
def _sync_engine() -> SyncEngine:
    return SyncEngine(GatewayClient())


async def get_sync_engine() -> SyncEngine:
    """
    Shared SyncEngine with one gateway client per process.

    Raises 500 when the gateway credentials are not configured.
    """
    try:
        return _sync_engine()
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


class BankConsentGate:
    """
    Dependency guarding bank data reads.

    Every check is audited. Denials become 403 with a machine-readable code;
    a failed check becomes 503 and does not ask for re-consent.
    """

    def __init__(self, resource_type: str):
        self.resource_type = resource_type

    async def __call__(
        self,
        request: Request,
        db: AsyncSession = Depends(get_db),
        user: TokenData = Depends(get_current_user),
        audit: AuditLogger = Depends(get_audit),
    ) -> ConsentAllowed:
        result = await require_bank_consent(
            db=db,
            user_id=user.sub,
            resource_type=self.resource_type,
            request_path=request.url.path,
            audit=audit,
            request_method=request.method,
        )
        if result.allowed:
            return result

        if result.code == ConsentCode.CHECK_FAILED:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            status_code = status.HTTP_403_FORBIDDEN
        raise HTTPException(
            status_code=status_code,
            detail={
                "error": result.message,
                "code": result.code.value,
                "requiresConsent": result.requires_consent,
            },
        )
