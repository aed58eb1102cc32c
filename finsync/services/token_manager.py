"""
Gateway access token lifecycle for bank connections.

Tokens are refreshed proactively when they are within the safety margin of
expiry. Refreshes for the same connection are serialized; callers persist the
result with persist_refreshed_token when should_update is set.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy import update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.config import SyncConfig
from finsync.core.encryption import encrypt_token, decrypt_token
from finsync.models.banking import BankConnection
from finsync.services.gateway import GatewayError
from finsync.utils.timezone import utcnow, as_utc

logger = logging.getLogger(__name__)


class RefreshFailed(Exception):
    """The gateway refused to issue a new token for this connection."""


@dataclass(frozen=True)
class TokenRefreshResult:
    access_token: str
    expires_at: datetime
    should_update: bool  # caller must persist the new token


@dataclass
class _RefreshSlot:
    """Refresh in progress for one connection; dropped when its last caller leaves."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0
    issued: tuple[str, datetime] | None = None


class TokenManager:
    """
    Hands out valid access tokens, refreshing them near expiry.

    Only connections with a refresh in flight are tracked. A token issued by
    a refresh is shared with the callers queued behind it and forgotten once
    they have all returned.
    """

    def __init__(
        self,
        gateway,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.config = config or SyncConfig()
        self.clock = clock
        self._slots: dict[str, _RefreshSlot] = {}

    @property
    def in_flight(self) -> int:
        return len(self._slots)

    def _needs_refresh(self, expires_at: datetime | None) -> bool:
        if expires_at is None:
            return True
        buffer = timedelta(minutes=self.config.token_buffer_minutes)
        return as_utc(expires_at) <= self.clock() + buffer

    def _enter(self, key: str) -> _RefreshSlot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _RefreshSlot()
            self._slots[key] = slot
        slot.waiters += 1
        return slot

    def _leave(self, key: str, slot: _RefreshSlot) -> None:
        slot.waiters -= 1
        if slot.waiters == 0 and self._slots.get(key) is slot:
            del self._slots[key]

    async def get_valid_token(self, user_id: str, connection: BankConnection) -> TokenRefreshResult:
        """
        Return a token usable for gateway calls on this connection.

        Raises:
            RefreshFailed: gateway rejected the refresh (4xx)
            GatewayError: transport failure or 5xx, worth retrying later
        """
        stored_expiry = as_utc(connection.token_expires_at)
        if connection.encrypted_access_token and not self._needs_refresh(stored_expiry):
            return TokenRefreshResult(
                access_token=decrypt_token(connection.encrypted_access_token),
                expires_at=stored_expiry,
                should_update=False,
            )

        key = str(connection.id)
        slot = self._enter(key)
        try:
            async with slot.lock:
                if slot.issued and not self._needs_refresh(slot.issued[1]):
                    token, expires_at = slot.issued
                    return TokenRefreshResult(
                        access_token=token,
                        expires_at=expires_at,
                        should_update=stored_expiry is None or expires_at > stored_expiry,
                    )

                try:
                    response = await self.gateway.get_access_token(user_id)
                except GatewayError as e:
                    if e.is_client_error:
                        logger.error(f"Token refresh rejected for connection {key}: {e.status}")
                        raise RefreshFailed(f"Token refresh rejected: {e.status}") from e
                    raise

                expires_at = self.clock() + timedelta(seconds=response.expires_in)
                slot.issued = (response.access_token, expires_at)
        finally:
            self._leave(key, slot)

        logger.info(f"Refreshed access token for connection {key}")
        return TokenRefreshResult(
            access_token=response.access_token,
            expires_at=expires_at,
            should_update=True,
        )


async def persist_refreshed_token(
    db: AsyncSession,
    connection_id: UUID,
    result: TokenRefreshResult,
) -> bool:
    """
    Store a refreshed token unless a later-expiring one is already stored.

    Returns:
        True if the row was updated
    """
    stmt = (
        update(BankConnection)
        .where(
            BankConnection.id == connection_id,
            or_(
                BankConnection.token_expires_at.is_(None),
                BankConnection.token_expires_at < result.expires_at,
            ),
        )
        .values(
            encrypted_access_token=encrypt_token(result.access_token),
            token_expires_at=result.expires_at,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    return res.rowcount == 1
