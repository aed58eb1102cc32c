"""Bank connection endpoints: link flow, listing and disconnection."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.database import get_db
from finsync.core.dependencies import BankConsentGate, get_audit, get_sync_engine
from finsync.core.errors import FinsyncError, InvalidInputError
from finsync.core.middleware import get_current_user, TokenData
from finsync.core.ratelimit import rate_limit
from finsync.models.banking import ConnectionStatus
from finsync.services import connections as connection_service
from finsync.services.audit import AuditLogger
from finsync.services.consent_guard import ConsentAllowed
from finsync.services.sync_engine import SyncEngine

router = APIRouter(tags=["connections"])


class LinkRequest(BaseModel):
    """Optional name overrides for the gateway intent."""
    first_name: str | None = None
    last_name: str | None = None


class LinkResponse(BaseModel):
    connection_id: UUID
    connect_url: str
    intent_id: str


class ConnectionResponse(BaseModel):
    """Bank connection details for the frontend."""
    id: UUID
    institution_id: str | None
    institution_name: str | None
    status: ConnectionStatus
    token_expires_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class CompleteLinkResponse(BaseModel):
    connection: ConnectionResponse
    accounts_linked: int
    transactions_added: int
    errors: list[str]


class DisconnectResponse(BaseModel):
    success: bool
    gateway_revoked: bool


class DisconnectAllResponse(BaseModel):
    success: bool
    disconnected: int


@router.post("/connections/link", response_model=LinkResponse, dependencies=[Depends(rate_limit("api"))])
async def start_link(
    request: LinkRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
) -> LinkResponse:
    """
    Start connecting a bank.

    Returns the gateway URL the frontend redirects the user to.
    """
    try:
        started = await connection_service.start_link(
            db,
            engine,
            user_id=user.sub,
            first_name=request.first_name or user.first_name or "User",
            last_name=request.last_name or user.last_name or "",
            email=user.email,
        )
        return LinkResponse(
            connection_id=started.connection.id,
            connect_url=started.connect_url,
            intent_id=started.intent_id,
        )
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to start bank connection: {str(e)}",
        )


@router.post("/connections/callback", response_model=CompleteLinkResponse)
async def complete_link(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
    audit: AuditLogger = Depends(get_audit),
) -> CompleteLinkResponse:
    """
    Finish the link flow after the gateway redirects back.

    Activates the pending connection, stores its accounts and runs the first sync.
    """
    try:
        completed = await connection_service.complete_link(db, engine, user.sub, audit)
    except InvalidInputError as e:
        # Keep the removal of the empty pending connection
        await db.commit()
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to complete bank connection: {str(e)}",
        )

    return CompleteLinkResponse(
        connection=ConnectionResponse.model_validate(completed.connection),
        accounts_linked=completed.accounts_linked,
        transactions_added=completed.sync.transactions_added,
        errors=completed.sync.errors,
    )


@router.get("/connections", response_model=list[ConnectionResponse])
async def get_connections(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    consent: ConsentAllowed = Depends(BankConsentGate("connection")),
) -> list[ConnectionResponse]:
    connections = await connection_service.list_connections(db, user.sub)
    return [ConnectionResponse.model_validate(c) for c in connections]


@router.delete("/connections/{connection_id}", response_model=DisconnectResponse)
async def disconnect(
    connection_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
    audit: AuditLogger = Depends(get_audit),
) -> DisconnectResponse:
    """Disconnect one bank; its accounts and transactions are soft-deleted."""
    try:
        revoked = await connection_service.disconnect_connection(db, engine, user.sub, connection_id, audit)
        return DisconnectResponse(success=True, gateway_revoked=revoked)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post(
    "/connections/disconnect-all",
    response_model=DisconnectAllResponse,
    dependencies=[Depends(rate_limit("consent"))],
)
async def disconnect_all(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
    audit: AuditLogger = Depends(get_audit),
) -> DisconnectAllResponse:
    """Permanently delete every bank connection, account and transaction of the user."""
    count = await connection_service.disconnect_all(db, user.sub, audit)
    return DisconnectAllResponse(success=True, disconnected=count)
