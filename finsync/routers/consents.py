"""Consent endpoints for PDPL/BOBF data-sharing permissions."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.database import get_db
from finsync.core.dependencies import get_audit, get_sync_engine
from finsync.core.errors import FinsyncError
from finsync.core.middleware import get_current_user, TokenData
from finsync.core.ratelimit import rate_limit
from finsync.models.compliance import ConsentType, ConsentStatus
from finsync.services import consents as consent_service
from finsync.services.audit import AuditLogger
from finsync.services.sync_engine import SyncEngine

router = APIRouter(tags=["consents"])


class GrantConsentRequest(BaseModel):
    consent_type: str
    permissions: list[str]
    purpose: str
    provider_id: str | None = None
    provider_name: str | None = None
    external_consent_id: str | None = None
    expires_in_days: int | None = None
    version: str = "1.0"


class RevokeConsentRequest(BaseModel):
    reason: str | None = None


class ConsentResponse(BaseModel):
    """Consent record."""
    id: UUID
    consent_type: ConsentType
    provider_id: str
    provider_name: str | None
    purpose: str
    permissions: list[str]
    status: ConsentStatus
    version: str
    granted_at: datetime
    expires_at: datetime | None
    revoked_at: datetime | None
    revocation_reason: str | None

    class Config:
        from_attributes = True


@router.get("/consents", response_model=list[ConsentResponse])
async def get_consents(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    status_filter: str | None = Query(None, alias="status", description="active, revoked, expired or all"),
    consent_type: str | None = Query(None, alias="type"),
) -> list[ConsentResponse]:
    try:
        consents = await consent_service.list_consents(db, user.sub, status=status_filter, consent_type=consent_type)
        return [ConsentResponse.model_validate(c) for c in consents]
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/consents", response_model=ConsentResponse, dependencies=[Depends(rate_limit("consent"))])
async def grant_consent(
    request: GrantConsentRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    audit: AuditLogger = Depends(get_audit),
) -> ConsentResponse:
    """
    Grant a consent.

    An active consent of the same type and provider is updated in place (200);
    otherwise a new one is created (201).
    """
    try:
        consent, created = await consent_service.grant_consent(
            db,
            user.sub,
            consent_type=request.consent_type,
            permissions=request.permissions,
            purpose=request.purpose,
            audit=audit,
            provider_id=request.provider_id,
            provider_name=request.provider_name,
            external_consent_id=request.external_consent_id,
            expires_in_days=request.expires_in_days,
            version=request.version,
        )
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return ConsentResponse.model_validate(consent)


@router.delete(
    "/consents/{consent_id}",
    response_model=ConsentResponse,
    dependencies=[Depends(rate_limit("consent"))],
)
async def revoke_consent(
    consent_id: UUID,
    request: RevokeConsentRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
    audit: AuditLogger = Depends(get_audit),
) -> ConsentResponse:
    """Withdraw a consent. Revoking bank access disconnects the banks it covers."""
    try:
        consent = await consent_service.revoke_consent(
            db,
            user.sub,
            consent_id,
            audit,
            engine=engine,
            reason=request.reason if request else None,
        )
        return ConsentResponse.model_validate(consent)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
