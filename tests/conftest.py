"""
Shared fixtures.

Tests run against an in-memory SQLite database through aiosqlite; the
banking gateway and audit storage are replaced with in-process fakes.
"""

import os
from datetime import datetime, timedelta

from cryptography.fernet import Fernet

os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ.setdefault("GATEWAY_CLIENT_ID", "test-client")
os.environ.setdefault("GATEWAY_CLIENT_SECRET", "test-secret")
os.environ.setdefault("CRON_API_KEY", "test-cron-key")

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from finsync.core.config import SyncConfig
from finsync.core.database import Base
from finsync.core.encryption import encrypt_token
from finsync.models import banking, billing, compliance, planning  # noqa: F401  (register tables)
from finsync.models.banking import BankConnection, BankAccount, ConnectionStatus
from finsync.models.compliance import Consent, ConsentType, ConsentStatus
from finsync.services.audit import AuditLogger
from finsync.services.sync_engine import SyncEngine

from tests.fakes import NOW, FakeGateway, InMemoryAuditStorage


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sync_config():
    return SyncConfig(cron_batch_size=1, cron_rate_limit_per_minute=60)


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy drive transactions so SAVEPOINT works under pysqlite
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit(audit_storage):
    return AuditLogger(audit_storage, enabled=True)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_connection(db):
    """Factory for a connection with accounts and a stored token."""

    async def _make(
        user_id: str = "user-1",
        name: str = "Bank A",
        accounts: tuple[str, ...] = ("acc-1",),
        token_expires_at: datetime | None = NOW + timedelta(hours=1),
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
        last_synced_at: datetime | None = None,
        consent_id=None,
        created_at: datetime | None = None,
    ) -> BankConnection:
        connection = BankConnection(
            user_id=user_id,
            institution_id=name.upper().replace(" ", "_"),
            institution_name=name,
            encrypted_access_token=encrypt_token(f"stored-{name}"),
            token_expires_at=token_expires_at,
            status=status,
            consent_id=consent_id,
        )
        if created_at is not None:
            connection.created_at = created_at
        db.add(connection)
        await db.flush()
        for external_id in accounts:
            db.add(
                BankAccount(
                    connection_id=connection.id,
                    user_id=user_id,
                    external_account_id=external_id,
                    account_type="Current",
                    currency="BHD",
                    last_synced_at=last_synced_at,
                )
            )
        await db.flush()
        return connection

    return _make


@pytest.fixture
def make_consent(db):
    async def _make(
        user_id: str = "user-1",
        status: ConsentStatus = ConsentStatus.ACTIVE,
        granted_at: datetime = NOW - timedelta(days=10),
        expires_at: datetime | None = NOW + timedelta(days=80),
        revoked_at: datetime | None = None,
        consent_type: ConsentType = ConsentType.BANK_ACCESS,
        provider_id: str = "",
        external_consent_id: str | None = None,
    ) -> Consent:
        consent = Consent(
            user_id=user_id,
            consent_type=consent_type,
            provider_id=provider_id,
            external_consent_id=external_consent_id,
            purpose="Show balances and transactions",
            permissions=["ReadAccountsBasic", "ReadTransactionsDetail"],
            status=status,
            granted_at=granted_at,
            expires_at=expires_at,
            revoked_at=revoked_at,
        )
        db.add(consent)
        await db.flush()
        return consent

    return _make


@pytest.fixture
def sync_engine(gateway, session_factory, sync_config):
    async def no_sleep(seconds):
        return None

    return SyncEngine(
        gateway,
        session_factory=session_factory,
        config=sync_config,
        sleep=no_sleep,
        clock=lambda: NOW,
    )
