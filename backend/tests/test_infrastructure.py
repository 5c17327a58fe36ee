"""Tests for configuration, encryption and the credential store."""

from datetime import timedelta

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode, ServiceError, create_error_response
from bizmate.core.logging import LoggerAdapter, get_logger, mask_secret
from bizmate.models.credential import XeroCredential
from bizmate.services.credentials import CredentialStore
from bizmate.services.encryption import EncryptionError, EncryptionService

from conftest import START


class TestConfig:
    """Tests for application configuration."""

    def test_defaults(self):
        """Refresh margin, state TTL and loop cap have sane defaults."""
        assert settings.xero_token_refresh_margin_seconds == 300
        assert settings.xero_auth_state_ttl_seconds == 600
        assert 6 <= settings.max_tool_iterations <= 10
        assert settings.conversation_history_limit == 20
        assert settings.pending_invoice_ttl_minutes == 30

    def test_database_url_format(self):
        assert settings.database_url.startswith(("sqlite", "postgresql"))

    def test_public_base_url_from_environment(self):
        assert settings.public_base_url == "https://bizmate.test"


class TestErrors:
    """Tests for the error taxonomy helpers."""

    def test_service_error_carries_code_and_action(self):
        error = ServiceError("boom", ErrorCode.XERO_TRANSIENT)
        assert error.message == "boom"
        assert error.is_retryable
        assert error.suggested_action

    def test_create_error_response_defaults_message(self):
        response = create_error_response(ErrorCode.XERO_NOT_CONNECTED)
        assert response.error_code == "XERO_NOT_CONNECTED"
        assert response.message == response.suggested_action


class TestLogging:
    """Tests for logging helpers."""

    def test_get_logger_namespaces(self):
        assert get_logger("services.x").name == "bizmate.services.x"
        assert get_logger("bizmate.api").name == "bizmate.api"

    def test_mask_secret(self):
        assert mask_secret("abcdef123456") == "abcd…(12)"
        assert mask_secret(None) == "<empty>"

    def test_adapter_appends_context(self):
        adapter = LoggerAdapter(get_logger("test"), {"user_id": "feishu:ou_1"})
        msg, _ = adapter.process("done", {})
        assert msg == "done - user_id=feishu:ou_1"


class TestEncryption:
    """Tests for EncryptionService."""

    def test_round_trip(self):
        service = EncryptionService(Fernet.generate_key().decode())
        ciphertext = service.encrypt("access-token")
        assert ciphertext != "access-token"
        assert service.decrypt(ciphertext) == "access-token"

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.setattr(settings, "encryption_key", "")
        with pytest.raises(EncryptionError):
            EncryptionService()

    def test_invalid_key_raises(self):
        with pytest.raises(EncryptionError):
            EncryptionService("not-a-fernet-key")

    def test_wrong_key_cannot_decrypt(self):
        ciphertext = EncryptionService(Fernet.generate_key().decode()).encrypt("secret")
        with pytest.raises(EncryptionError):
            EncryptionService(Fernet.generate_key().decode()).decrypt(ciphertext)


class TestDatabase:
    """Tests for the test database wiring."""

    async def test_database_connection(self, db_session: AsyncSession):
        result = await db_session.execute(text("SELECT 1"))
        assert result.scalar() == 1


class TestCredentialStore:
    """Tests for CredentialStore."""

    async def test_get_missing_returns_none(self, db_session: AsyncSession):
        assert await CredentialStore(db_session).get("feishu:nobody") is None

    async def test_upsert_then_get(self, db_session: AsyncSession):
        store = CredentialStore(db_session)
        expires_at = START + timedelta(minutes=30)
        await store.upsert("feishu:ou_1", "access", "refresh", expires_at, "tenant-1", "Acme")

        credential = await store.get("feishu:ou_1")
        assert credential.access_token == "access"
        assert credential.refresh_token == "refresh"
        assert credential.expires_at == expires_at
        assert credential.tenant_id == "tenant-1"
        assert credential.tenant_name == "Acme"

    async def test_tokens_are_encrypted_at_rest(self, db_session: AsyncSession):
        store = CredentialStore(db_session)
        await store.upsert("feishu:ou_1", "access", "refresh", START, "t", "Acme")

        row = (await db_session.execute(select(XeroCredential))).scalar_one()
        assert row.access_token_encrypted != "access"
        assert row.refresh_token_encrypted != "refresh"

    async def test_upsert_keeps_tenant_when_asked(self, db_session: AsyncSession):
        store = CredentialStore(db_session)
        await store.upsert("feishu:ou_1", "a1", "r1", START, "tenant-1", "Acme")
        await store.upsert("feishu:ou_1", "a2", "r2", START, keep_tenant=True)

        credential = await store.get("feishu:ou_1")
        assert credential.access_token == "a2"
        assert credential.tenant_id == "tenant-1"

    async def test_upsert_replaces_tenant_by_default(self, db_session: AsyncSession):
        store = CredentialStore(db_session)
        await store.upsert("feishu:ou_1", "a1", "r1", START, "tenant-1", "Acme")
        await store.upsert("feishu:ou_1", "a2", "r2", START)

        assert (await store.get("feishu:ou_1")).tenant_id is None

    async def test_delete(self, db_session: AsyncSession):
        store = CredentialStore(db_session)
        await store.upsert("feishu:ou_1", "a", "r", START, "t", "Acme")

        assert await store.delete("feishu:ou_1") is True
        assert await store.delete("feishu:ou_1") is False
        assert await store.get("feishu:ou_1") is None

    async def test_count_and_connection_status(self, db_session: AsyncSession):
        store = CredentialStore(db_session)
        await store.upsert("feishu:ou_1", "a", "r", START, "t", "Acme")
        await store.upsert("feishu:ou_2", "a", "r", START, "t", "Beta")

        assert await store.count_connected() == 2
        status = await store.connection_status("feishu:ou_1")
        assert status["status"] == "connected"
        assert status["tenant_name"] == "Acme"
        assert (await store.connection_status("feishu:ou_3"))["status"] == "disconnected"
