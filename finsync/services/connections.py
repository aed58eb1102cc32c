"""Bank connection lifecycle: link, complete, list and disconnect."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.encryption import encrypt_token
from finsync.core.errors import NotFoundError, InvalidInputError
from finsync.core.database import upsert_for
from finsync.models.banking import BankConnection, BankAccount, Transaction, ConnectionStatus
from finsync.models.compliance import Consent, ConsentType, ConsentStatus
from finsync.services.audit import AuditLogger, AuditEvent
from finsync.services.sync_engine import SyncEngine, SyncResult, SyncType
from finsync.utils.timezone import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkStarted:
    connection: BankConnection
    connect_url: str
    intent_id: str


@dataclass(frozen=True)
class LinkCompleted:
    connection: BankConnection
    accounts_linked: int
    sync: SyncResult


def mask_account_number(identification: str | None) -> str:
    if identification:
        return "••••" + identification[-4:]
    return "••••0000"


async def get_user_connection(db: AsyncSession, user_id: str, connection_id: UUID) -> BankConnection:
    result = await db.execute(
        select(BankConnection).where(
            BankConnection.id == connection_id,
            BankConnection.user_id == user_id,
            BankConnection.deleted_at.is_(None),
        )
    )
    connection = result.scalar_one_or_none()
    if not connection:
        raise NotFoundError("Connection not found")
    return connection


async def list_connections(db: AsyncSession, user_id: str) -> list[BankConnection]:
    result = await db.execute(
        select(BankConnection)
        .where(
            BankConnection.user_id == user_id,
            BankConnection.deleted_at.is_(None),
        )
        .order_by(BankConnection.created_at.desc())
    )
    return list(result.scalars().all())


async def start_link(
    db: AsyncSession,
    engine: SyncEngine,
    user_id: str,
    first_name: str,
    last_name: str,
    email: str | None = None,
) -> LinkStarted:
    """Create a pending connection and a gateway intent for the user to complete."""
    timeout = engine.config.gateway_timeout_seconds
    token = await asyncio.wait_for(engine.gateway.get_access_token(user_id), timeout)
    intent = await asyncio.wait_for(
        engine.gateway.create_intent(token.access_token, user_id, first_name, last_name, email),
        timeout,
    )

    connection = BankConnection(
        user_id=user_id,
        status=ConnectionStatus.PENDING,
    )
    db.add(connection)
    await db.flush()
    await db.refresh(connection)

    logger.info(f"Started bank link {connection.id} for user {user_id}")
    return LinkStarted(connection=connection, connect_url=intent.connect_url, intent_id=intent.intent_id)


async def complete_link(
    db: AsyncSession,
    engine: SyncEngine,
    user_id: str,
    audit: AuditLogger,
) -> LinkCompleted:
    """
    Activate the user's latest pending connection after the gateway redirect.

    Stores the encrypted token, upserts the accounts the gateway reports, links
    the active bank_access consent and runs an initial full sync.

    Raises:
        NotFoundError: no pending connection
        InvalidInputError: the gateway returned no accounts (the pending connection is removed)
    """
    result = await db.execute(
        select(BankConnection)
        .where(
            BankConnection.user_id == user_id,
            BankConnection.status == ConnectionStatus.PENDING,
            BankConnection.deleted_at.is_(None),
        )
        .order_by(BankConnection.created_at.desc())
        .limit(1)
    )
    connection = result.scalar_one_or_none()
    if not connection:
        raise NotFoundError("No pending connection found")

    timeout = engine.config.gateway_timeout_seconds
    token = await asyncio.wait_for(engine.gateway.get_access_token(user_id), timeout)
    accounts = await asyncio.wait_for(engine.gateway.get_accounts(token.access_token), timeout)

    if not accounts:
        await db.delete(connection)
        await db.flush()
        raise InvalidInputError("No accounts found. Please try again.")

    consent_result = await db.execute(
        select(Consent.id)
        .where(
            Consent.user_id == user_id,
            Consent.consent_type == ConsentType.BANK_ACCESS,
            Consent.status == ConsentStatus.ACTIVE,
        )
        .order_by(Consent.granted_at.desc())
        .limit(1)
    )

    first = accounts[0]
    connection.institution_id = first.provider_id or "unknown"
    connection.institution_name = first.provider_name or connection.institution_id
    connection.encrypted_access_token = encrypt_token(token.access_token)
    connection.token_expires_at = engine.clock() + timedelta(seconds=token.expires_in)
    connection.consent_id = consent_result.scalar_one_or_none()
    connection.status = ConnectionStatus.ACTIVE
    await db.flush()

    for account in accounts:
        stmt = upsert_for(db, BankAccount).values(
            user_id=user_id,
            connection_id=connection.id,
            external_account_id=account.account_id,
            account_type=account.account_type,
            account_number_masked=mask_account_number(account.identification),
            currency=account.currency,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["connection_id", "external_account_id"],
            set_={
                "account_type": stmt.excluded.account_type,
                "account_number_masked": stmt.excluded.account_number_masked,
                "currency": stmt.excluded.currency,
                "deleted_at": None,
            },
        )
        await db.execute(stmt)

    sync = await engine.sync_connection(db, connection, SyncType.FULL)

    await audit.log(
        AuditEvent(
            user_id=user_id,
            action_type="bank_connected",
            resource_type="bank_connection",
            resource_id=str(connection.id),
            response_status=200,
            request_details={
                "bank_id": connection.institution_id,
                "bank_name": connection.institution_name,
                "accounts": len(accounts),
            },
        )
    )
    logger.info(f"Completed bank link {connection.id} for user {user_id} with {len(accounts)} accounts")
    return LinkCompleted(connection=connection, accounts_linked=len(accounts), sync=sync)


async def revoke_at_gateway(db: AsyncSession, engine: SyncEngine, connection: BankConnection) -> bool:
    """Withdraw the gateway-side consent; failures are logged, not raised."""
    if connection.consent_id is None:
        return False

    consent = await db.get(Consent, connection.consent_id)
    if consent is None or not consent.external_consent_id:
        return False

    try:
        token = await asyncio.wait_for(
            engine.token_manager.get_valid_token(connection.user_id, connection),
            engine.config.gateway_timeout_seconds,
        )
        await asyncio.wait_for(
            engine.gateway.revoke_consent(token.access_token, consent.external_consent_id),
            engine.config.gateway_timeout_seconds,
        )
        return True
    except Exception as e:
        logger.error(f"Failed to revoke gateway consent for connection {connection.id}: {e}")
        return False


async def soft_delete_connection(
    db: AsyncSession,
    connection_id: UUID,
    status: ConnectionStatus = ConnectionStatus.REVOKED,
) -> None:
    """Mark a connection, its accounts and their transactions as deleted."""
    now = utcnow()
    account_ids = select(BankAccount.id).where(BankAccount.connection_id == connection_id)

    await db.execute(
        update(Transaction)
        .where(Transaction.account_id.in_(account_ids), Transaction.deleted_at.is_(None))
        .values(deleted_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(BankAccount)
        .where(BankAccount.connection_id == connection_id, BankAccount.deleted_at.is_(None))
        .values(deleted_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(BankConnection)
        .where(BankConnection.id == connection_id)
        .values(status=status, deleted_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def disconnect_connection(
    db: AsyncSession,
    engine: SyncEngine,
    user_id: str,
    connection_id: UUID,
    audit: AuditLogger,
) -> bool:
    """
    Disconnect one bank.

    Returns:
        True if the gateway-side consent was revoked as well
    """
    connection = await get_user_connection(db, user_id, connection_id)
    revoked = await revoke_at_gateway(db, engine, connection)
    await soft_delete_connection(db, connection.id)

    await audit.log(
        AuditEvent(
            user_id=user_id,
            action_type="bank_disconnected",
            resource_type="bank_connection",
            resource_id=str(connection_id),
            request_method="DELETE",
            response_status=200,
            request_details={
                "bank_name": connection.institution_name,
                "bank_id": connection.institution_id,
                "gateway_revoked": revoked,
            },
        )
    )
    return revoked


async def disconnect_all(db: AsyncSession, user_id: str, audit: AuditLogger) -> int:
    """Hard-delete every transaction, account and connection of the user."""
    result = await db.execute(
        select(BankConnection.id, BankConnection.institution_name, BankConnection.institution_id)
        .where(BankConnection.user_id == user_id)
    )
    connections = result.all()

    await db.execute(delete(Transaction).where(Transaction.user_id == user_id))
    await db.execute(delete(BankAccount).where(BankAccount.user_id == user_id))
    await db.execute(delete(BankConnection).where(BankConnection.user_id == user_id))

    for conn in connections:
        await audit.log(
            AuditEvent(
                user_id=user_id,
                action_type="bank_disconnected",
                resource_type="bank_connection",
                resource_id=str(conn.id),
                request_method="DELETE",
                response_status=200,
                request_details={
                    "bank_name": conn.institution_name,
                    "bank_id": conn.institution_id,
                    "bulk_disconnect": True,
                },
            )
        )

    logger.info(f"Disconnected {len(connections)} bank connections for user {user_id}")
    return len(connections)
