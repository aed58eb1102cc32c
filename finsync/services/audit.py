"""
Audit trail for financial data access and modifications.

Audit writes are best-effort: a storage failure is logged and never reaches
the caller. SqlAuditStorage writes through its own session so the audit row
survives a rollback of the request that produced it.
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.database import async_session_factory
from finsync.models.compliance import AuditLog

logger = logging.getLogger(__name__)

load_dotenv()

ENABLE_AUDIT_LOGGING = os.getenv("ENABLE_AUDIT_LOGGING", "true").lower() == "true"


@dataclass
class AuditEvent:
    user_id: str | None
    action_type: str  # "data_access", "consent_revoked", "bank_synced", ...
    resource_type: str  # "transaction", "account", "consent", ...
    resource_id: str | None = None
    performed_by: str = "user"
    request_method: str | None = None
    request_path: str | None = None
    request_details: dict = field(default_factory=dict)
    response_status: int | None = None
    response_details: dict = field(default_factory=dict)
    duration_ms: int | None = None


class AuditStorage(ABC):
    """Append-only destination for audit events."""

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> None:
        ...


class SqlAuditStorage(AuditStorage):
    """Writes audit rows to the audit_logs table in a dedicated session."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def append_event(self, event: AuditEvent) -> None:
        async with self.session_factory() as db:
            db.add(
                AuditLog(
                    user_id=event.user_id,
                    action_type=event.action_type,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    performed_by=event.performed_by,
                    request_method=event.request_method,
                    request_path=event.request_path,
                    request_details=event.request_details,
                    response_status=event.response_status,
                    response_details=event.response_details,
                    duration_ms=event.duration_ms,
                )
            )
            await db.commit()


class AuditLogger:
    """Entry point used by services and routers to record audit events."""

    def __init__(self, storage: AuditStorage | None = None, enabled: bool = ENABLE_AUDIT_LOGGING):
        self._storage = storage
        self.enabled = enabled

    async def log(self, event: AuditEvent) -> bool:
        """
        Record an event.

        Returns True if the event was stored (or there is nowhere to store it).
        """
        if not self.enabled or self._storage is None:
            return True

        try:
            await self._storage.append_event(event)
            return True
        except Exception as e:
            logger.error(
                f"Audit write failed ({event.action_type} {event.resource_type} "
                f"for user {event.user_id}): {e}"
            )
            return False

    async def log_data_access(
        self,
        user_id: str,
        resource_type: str,
        request_path: str | None,
        response_status: int,
        response_details: dict | None = None,
        duration_ms: int | None = None,
        request_method: str = "GET",
    ) -> bool:
        return await self.log(
            AuditEvent(
                user_id=user_id,
                action_type="data_access",
                resource_type=resource_type,
                request_method=request_method,
                request_path=request_path,
                response_status=response_status,
                response_details=response_details or {},
                duration_ms=duration_ms,
            )
        )


def get_audit_logger() -> AuditLogger:
    """Default logger writing to the application database."""
    return AuditLogger(SqlAuditStorage(async_session_factory))
