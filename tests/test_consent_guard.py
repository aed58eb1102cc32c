"""Tests for the bank data consent gate."""

from datetime import timedelta
from unittest.mock import AsyncMock

from sqlalchemy.exc import OperationalError

from finsync.models.banking import ConnectionStatus
from finsync.models.compliance import ConsentStatus
from finsync.services.consent_guard import (
    ConsentAllowed,
    ConsentCode,
    ConsentDenied,
    check_bank_access_consent,
    require_bank_consent,
)


class TestCheckBankAccessConsent:
    async def test_no_connections_is_allowed(self, db, now):
        result = await check_bank_access_consent(db, "user-1", now=now)

        assert isinstance(result, ConsentAllowed)
        assert result.no_banks_connected is True

    async def test_revoked_connections_do_not_count(self, db, make_connection, now):
        await make_connection(status=ConnectionStatus.REVOKED)

        result = await check_bank_access_consent(db, "user-1", now=now)

        assert result.allowed
        assert result.no_banks_connected is True

    async def test_active_consent_allows(self, db, make_connection, make_consent, now):
        await make_connection()
        consent = await make_consent(expires_at=now + timedelta(days=30))

        result = await check_bank_access_consent(db, "user-1", now=now)

        assert isinstance(result, ConsentAllowed)
        assert result.consent_id == consent.id
        assert result.no_banks_connected is False

    async def test_most_recent_revoked_denies(self, db, make_connection, make_consent, now):
        await make_connection()
        await make_consent(status=ConsentStatus.EXPIRED, granted_at=now - timedelta(days=200))
        await make_consent(
            status=ConsentStatus.REVOKED,
            granted_at=now - timedelta(days=20),
            revoked_at=now - timedelta(days=1),
        )

        result = await check_bank_access_consent(db, "user-1", now=now)

        assert isinstance(result, ConsentDenied)
        assert result.code == ConsentCode.CONSENT_REVOKED
        assert result.requires_consent is True

    async def test_active_but_past_expiry_denies_expired(self, db, make_connection, make_consent, now):
        await make_connection()
        await make_consent(expires_at=now - timedelta(hours=1))

        result = await check_bank_access_consent(db, "user-1", now=now)

        assert result.code == ConsentCode.CONSENT_EXPIRED

    async def test_no_consent_record_denies(self, db, make_connection, now):
        await make_connection()

        result = await check_bank_access_consent(db, "user-1", now=now)

        assert result.code == ConsentCode.NO_CONSENT

    async def test_other_users_consent_does_not_count(self, db, make_connection, make_consent, now):
        await make_connection()
        await make_consent(user_id="user-2")

        result = await check_bank_access_consent(db, "user-1", now=now)

        assert result.code == ConsentCode.NO_CONSENT

    async def test_store_failure_is_check_failed(self, now):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection lost"))

        result = await check_bank_access_consent(db, "user-1", now=now)

        assert isinstance(result, ConsentDenied)
        assert result.code == ConsentCode.CHECK_FAILED
        assert result.requires_consent is False


class TestRequireBankConsent:
    async def test_allowed_access_is_audited(self, db, make_connection, make_consent, audit, audit_storage):
        await make_connection()
        consent = await make_consent()

        result = await require_bank_consent(db, "user-1", "transaction", "/api/v1/finance/transactions", audit)

        assert result.allowed
        [event] = audit_storage.events
        assert event.action_type == "data_access"
        assert event.response_status == 200
        assert event.response_details == {"consentId": str(consent.id)}

    async def test_denied_access_is_audited(self, db, make_connection, audit, audit_storage):
        await make_connection()

        result = await require_bank_consent(db, "user-1", "account", "/api/v1/finance/accounts", audit)

        assert not result.allowed
        [event] = audit_storage.events
        assert event.response_status == 403
        assert event.response_details == {"denied": True, "reason": "NO_CONSENT"}

    async def test_no_banks_is_audited(self, db, audit, audit_storage):
        await require_bank_consent(db, "user-1", "account", "/api/v1/finance/accounts", audit)

        assert audit_storage.events[0].response_details == {"noBanksConnected": True}
