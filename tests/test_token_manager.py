"""Tests for access token refresh and persistence."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from finsync.core.config import SyncConfig
from finsync.core.encryption import decrypt_token
from finsync.models.banking import BankConnection
from finsync.services.gateway import GatewayError
from finsync.services.token_manager import (
    RefreshFailed,
    TokenManager,
    TokenRefreshResult,
    persist_refreshed_token,
)


@pytest.fixture
def manager(gateway, now):
    return TokenManager(gateway, SyncConfig(token_buffer_minutes=5), clock=lambda: now)


async def _stored_expiry(db, connection_id):
    result = await db.execute(
        select(BankConnection.token_expires_at).where(BankConnection.id == connection_id)
    )
    return result.scalar_one()


class TestGetValidToken:
    async def test_stored_token_is_reused_outside_buffer(self, manager, gateway, make_connection, now):
        connection = await make_connection(token_expires_at=now + timedelta(minutes=30))

        result = await manager.get_valid_token("user-1", connection)

        assert result.access_token == "stored-Bank A"
        assert result.should_update is False
        assert gateway.token_calls == 0

    async def test_token_inside_buffer_is_refreshed(self, manager, gateway, make_connection, now):
        connection = await make_connection(token_expires_at=now + timedelta(minutes=4))

        result = await manager.get_valid_token("user-1", connection)

        assert result.access_token == "fresh-token-1"
        assert result.should_update is True
        assert result.expires_at == now + timedelta(seconds=3600)
        assert gateway.token_calls == 1

    async def test_missing_expiry_is_refreshed(self, manager, gateway, make_connection):
        connection = await make_connection(token_expires_at=None)

        result = await manager.get_valid_token("user-1", connection)

        assert result.should_update is True
        assert gateway.token_calls == 1

    async def test_concurrent_refreshes_call_gateway_once(self, manager, gateway, make_connection, now):
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))

        results = await asyncio.gather(
            *(manager.get_valid_token("user-1", connection) for _ in range(5))
        )

        assert gateway.token_calls == 1
        assert {r.access_token for r in results} == {"fresh-token-1"}
        assert manager.in_flight == 0

    async def test_issued_token_is_not_kept_after_refresh(self, manager, gateway, make_connection, now):
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))

        first = await manager.get_valid_token("user-1", connection)
        second = await manager.get_valid_token("user-1", connection)

        assert manager.in_flight == 0
        assert gateway.token_calls == 2
        assert (first.access_token, second.access_token) == ("fresh-token-1", "fresh-token-2")

    async def test_failed_refresh_releases_connection(self, manager, gateway, make_connection, now):
        gateway.token_error = GatewayError(401, "invalid_client")
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))

        with pytest.raises(RefreshFailed):
            await manager.get_valid_token("user-1", connection)

        assert manager.in_flight == 0

    async def test_client_error_becomes_refresh_failed(self, manager, gateway, make_connection, now):
        gateway.token_error = GatewayError(401, "invalid_client")
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))

        with pytest.raises(RefreshFailed):
            await manager.get_valid_token("user-1", connection)

    async def test_server_error_propagates(self, manager, gateway, make_connection, now):
        gateway.token_error = GatewayError(503, "maintenance")
        connection = await make_connection(token_expires_at=now - timedelta(minutes=1))

        with pytest.raises(GatewayError):
            await manager.get_valid_token("user-1", connection)


class TestPersistRefreshedToken:
    async def test_newer_token_is_stored_encrypted(self, db, make_connection, now):
        connection = await make_connection(token_expires_at=now)
        result = TokenRefreshResult("new-token", now + timedelta(hours=1), should_update=True)

        updated = await persist_refreshed_token(db, connection.id, result)

        assert updated is True
        await db.refresh(connection)
        assert decrypt_token(connection.encrypted_access_token) == "new-token"

    async def test_expiry_never_moves_backwards(self, db, make_connection, now):
        connection = await make_connection(token_expires_at=now + timedelta(hours=2))
        older = TokenRefreshResult("older-token", now + timedelta(hours=1), should_update=True)

        updated = await persist_refreshed_token(db, connection.id, older)

        assert updated is False
        await db.refresh(connection)
        assert decrypt_token(connection.encrypted_access_token) == "stored-Bank A"

    async def test_out_of_order_writers_keep_latest(self, db, make_connection, now):
        connection = await make_connection(token_expires_at=None)
        first = TokenRefreshResult("first", now + timedelta(hours=1), should_update=True)
        second = TokenRefreshResult("second", now + timedelta(hours=2), should_update=True)

        assert await persist_refreshed_token(db, connection.id, second) is True
        assert await persist_refreshed_token(db, connection.id, first) is False

        stored = await _stored_expiry(db, connection.id)
        assert stored.replace(tzinfo=None) == (now + timedelta(hours=2)).replace(tzinfo=None)
