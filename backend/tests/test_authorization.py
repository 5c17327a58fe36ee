"""Tests for the Xero authorization flow."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.core.errors import ErrorCode
from bizmate.models.credential import AuthorizationState
from bizmate.services.authorization import AuthorizationFlow, authorization_link
from bizmate.services.credentials import CredentialStore
from bizmate.services.xero_auth import (
    TokenGrant,
    XeroAuthorizationError,
    XeroTenant,
    XeroTransientError,
)

from conftest import START

USER = "feishu:ou_1"


@pytest.fixture
def oauth():
    client = MagicMock()
    client.client_id = "client"
    client.redirect_uri = "https://bizmate.test/callback"
    client.exchange_code = AsyncMock(
        return_value=TokenGrant(access_token="access", refresh_token="refresh", expires_in=1800)
    )
    client.get_connections = AsyncMock(return_value=[
        XeroTenant(tenantId="tenant-1", tenantName="Acme"),
        XeroTenant(tenantId="tenant-2", tenantName="Beta"),
    ])
    return client


def state_of(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestAuthorizationLink:
    def test_link_points_at_auth_endpoint(self):
        assert authorization_link("feishu:ou 1") == "https://bizmate.test/auth?user_id=feishu%3Aou+1"

    def test_explicit_base_url(self):
        assert authorization_link("u", "https://x.example/") == "https://x.example/auth?user_id=u"


class TestIssueAuthorizationUrl:
    async def test_url_carries_client_scope_and_state(self, db_session: AsyncSession, oauth, clock):
        flow = AuthorizationFlow(db_session, oauth, clock=clock)

        url = await flow.issue_authorization_url(USER)
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://login.xero.com/identity/connect/authorize?")
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["client"]
        assert query["redirect_uri"] == ["https://bizmate.test/callback"]
        assert "offline_access" in query["scope"][0]
        assert len(query["state"][0]) >= 32

    async def test_states_are_unique(self, db_session: AsyncSession, oauth, clock):
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        first = state_of(await flow.issue_authorization_url(USER))
        second = state_of(await flow.issue_authorization_url(USER))
        assert first != second

    async def test_issuing_sweeps_expired_states(self, db_session: AsyncSession, oauth, clock):
        flow = AuthorizationFlow(db_session, oauth, state_ttl_seconds=600, clock=clock)
        await flow.issue_authorization_url(USER)
        clock.advance(minutes=11)
        await flow.issue_authorization_url(USER)

        count = (await db_session.execute(select(func.count()).select_from(AuthorizationState))).scalar_one()
        assert count == 1


class TestConsumeCallback:
    async def test_success_stores_first_tenant(self, db_session: AsyncSession, oauth, clock):
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))

        result = await flow.consume_callback("code", state)

        assert result.success
        assert result.user_id == USER
        assert result.tenant_name == "Acme"
        assert "Acme" in result.message
        credential = await CredentialStore(db_session).get(USER)
        assert credential.access_token == "access"
        assert credential.tenant_id == "tenant-1"
        assert credential.expires_at == START + timedelta(seconds=1800)
        oauth.exchange_code.assert_awaited_once_with("code")
        oauth.get_connections.assert_awaited_once_with("access")

    async def test_state_is_single_use(self, db_session: AsyncSession, oauth, clock):
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))

        assert (await flow.consume_callback("code", state)).success
        second = await flow.consume_callback("code", state)

        assert not second.success
        assert second.error_code == ErrorCode.AUTH_INVALID_STATE
        assert oauth.exchange_code.await_count == 1

    async def test_unknown_state_rejected_without_provider_call(self, db_session: AsyncSession, oauth, clock):
        result = await AuthorizationFlow(db_session, oauth, clock=clock).consume_callback("code", "forged")

        assert result.error_code == ErrorCode.AUTH_INVALID_STATE
        oauth.exchange_code.assert_not_called()

    async def test_expired_state_rejected(self, db_session: AsyncSession, oauth, clock):
        flow = AuthorizationFlow(db_session, oauth, state_ttl_seconds=600, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))
        clock.advance(minutes=10)

        result = await flow.consume_callback("code", state)

        assert result.error_code == ErrorCode.AUTH_INVALID_STATE
        oauth.exchange_code.assert_not_called()

    async def test_exchange_failure_surfaces_description_and_stores_nothing(
        self, db_session: AsyncSession, oauth, clock
    ):
        oauth.exchange_code.side_effect = XeroAuthorizationError("Authorization code expired")
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))

        result = await flow.consume_callback("code", state)

        assert not result.success
        assert result.error == "Authorization code expired"
        assert result.error_code == ErrorCode.AUTH_EXCHANGE_FAILED
        assert await CredentialStore(db_session).get(USER) is None

    async def test_connections_failure_stores_nothing(self, db_session: AsyncSession, oauth, clock):
        oauth.get_connections.side_effect = XeroTransientError("Xero connections endpoint timed out")
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))

        result = await flow.consume_callback("code", state)

        assert result.error == "Xero connections endpoint timed out"
        assert await CredentialStore(db_session).get(USER) is None

    async def test_missing_refresh_token_fails(self, db_session: AsyncSession, oauth, clock):
        oauth.exchange_code.return_value = TokenGrant(access_token="access")
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))

        result = await flow.consume_callback("code", state)

        assert not result.success
        assert await CredentialStore(db_session).get(USER) is None

    async def test_no_connections_stores_credential_without_tenant(self, db_session: AsyncSession, oauth, clock):
        oauth.get_connections.return_value = []
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))

        result = await flow.consume_callback("code", state)

        assert result.success
        assert (await CredentialStore(db_session).get(USER)).tenant_id is None

    async def test_disconnect_removes_credential(self, db_session: AsyncSession, oauth, clock):
        flow = AuthorizationFlow(db_session, oauth, clock=clock)
        state = state_of(await flow.issue_authorization_url(USER))
        await flow.consume_callback("code", state)

        assert await flow.disconnect(USER) is True
        assert await CredentialStore(db_session).get(USER) is None
