"""Xero OAuth2 client and per-user token lifecycle management.

This module provides:
- The Xero error taxonomy shared by the token manager and the API gateway
- XeroOAuthClient for the authorization-code and refresh-token grants and
  the tenant connections endpoint
- TokenManager, which hands out usable access tokens and refreshes them
  lazily when they come within a safety margin of expiry
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode, ServiceError
from bizmate.core.logging import mask_secret
from bizmate.models.base import utc_now
from bizmate.services.credentials import Credential, CredentialStore

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class XeroError(ServiceError):
    """Base exception for Xero failures."""
    error_code = ErrorCode.XERO_REQUEST_FAILED


class XeroNotConnectedError(XeroError):
    """No usable credential; the user has to authorize again."""
    error_code = ErrorCode.XERO_NOT_CONNECTED


class XeroNoTenantError(XeroError):
    """Credential exists but no organisation was resolved for it."""
    error_code = ErrorCode.XERO_NO_TENANT


class XeroUnauthorizedError(XeroError):
    """Xero rejected the current access token mid-call (401/403)."""
    error_code = ErrorCode.XERO_UNAUTHORIZED


class XeroRateLimitError(XeroError):
    """Raised when rate limited (429)."""
    error_code = ErrorCode.XERO_RATE_LIMITED

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class XeroNotFoundError(XeroError):
    """Raised when a resource is not found (404)."""
    error_code = ErrorCode.XERO_NOT_FOUND


class XeroTransientError(XeroError):
    """Network failure, timeout or 5xx. Safe to retry."""
    error_code = ErrorCode.XERO_TRANSIENT


class XeroGrantInvalidError(XeroError):
    """The refresh grant itself is void (``invalid_grant``)."""
    error_code = ErrorCode.XERO_NOT_CONNECTED


class XeroAuthorizationError(XeroError):
    """Code exchange or tenant lookup failed during authorization."""
    error_code = ErrorCode.AUTH_EXCHANGE_FAILED


# =============================================================================
# Data Models
# =============================================================================


class TokenGrant(BaseModel):
    """Token endpoint response."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 1800
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)


class XeroTenant(BaseModel):
    """One entry of the connections endpoint."""
    tenant_id: str = Field(alias="tenantId")
    tenant_name: Optional[str] = Field(None, alias="tenantName")
    tenant_type: Optional[str] = Field(None, alias="tenantType")


# =============================================================================
# OAuth Client
# =============================================================================


class XeroOAuthClient:
    """HTTP client for Xero's identity endpoints.

    Failures are classified rather than passed through:
    - timeouts, transport errors, 429 and 5xx -> XeroTransientError
    - ``{"error": "invalid_grant"}`` -> XeroGrantInvalidError
    - any other 4xx -> XeroAuthorizationError with the provider's
      ``error_description`` verbatim
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        token_url: Optional[str] = None,
        connections_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id or settings.xero_client_id
        self.client_secret = client_secret or settings.xero_client_secret
        self.redirect_uri = redirect_uri or settings.xero_redirect_uri
        self.token_url = token_url or settings.xero_token_url
        self.connections_url = connections_url or settings.xero_connections_url
        self.timeout = timeout or settings.xero_request_timeout

        # HTTP client will be created lazily unless injected
        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "XeroOAuthClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def _error_fields(response: httpx.Response) -> tuple[str, str]:
        """Extract (error, error_description) from an OAuth error body."""
        try:
            body = response.json()
        except ValueError:
            return "", response.text or f"HTTP {response.status_code}"
        if not isinstance(body, dict):
            return "", str(body)
        error = str(body.get("error", ""))
        description = body.get("error_description") or error or f"HTTP {response.status_code}"
        return error, str(description)

    async def _post_token(self, data: dict) -> TokenGrant:
        client = await self._get_client()
        form = {
            **data,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            response = await client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise XeroTransientError(f"Xero token endpoint timed out: {e}") from e
        except httpx.TransportError as e:
            raise XeroTransientError(f"Cannot reach Xero token endpoint: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise XeroTransientError(
                f"Xero token endpoint unavailable (HTTP {response.status_code})"
            )
        if not response.is_success:
            error, description = self._error_fields(response)
            if error == "invalid_grant":
                raise XeroGrantInvalidError(description)
            raise XeroAuthorizationError(description)

        try:
            return TokenGrant.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise XeroAuthorizationError(f"Malformed token response: {e}") from e

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for the initial token grant."""
        logger.debug(f"Exchanging authorization code {mask_secret(code)}")
        return await self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Run the refresh-token grant."""
        return await self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def get_connections(self, access_token: str) -> List[XeroTenant]:
        """List the organisations the access token is connected to."""
        client = await self._get_client()
        try:
            response = await client.get(
                self.connections_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise XeroTransientError(f"Xero connections endpoint timed out: {e}") from e
        except httpx.TransportError as e:
            raise XeroTransientError(f"Cannot reach Xero connections endpoint: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise XeroTransientError(
                f"Xero connections endpoint unavailable (HTTP {response.status_code})"
            )
        if not response.is_success:
            _, description = self._error_fields(response)
            raise XeroAuthorizationError(description)

        try:
            payload = response.json()
            return [XeroTenant.model_validate(item) for item in payload or []]
        except (ValueError, TypeError, ValidationError) as e:
            raise XeroAuthorizationError(f"Malformed connections response: {e}") from e


# =============================================================================
# Token Lifecycle
# =============================================================================


class TokenManager:
    """Hands out currently usable access tokens for a user.

    A cached token is returned untouched while ``now < expires_at - margin``.
    Otherwise exactly one refresh is attempted: success stores the new
    tokens (tenant preserved), a rejected grant deletes the credential and
    raises XeroNotConnectedError, and a transient failure raises
    XeroTransientError leaving the credential as it was.

    Concurrent calls for the same user may both refresh; the last write wins
    and both writes hold valid tokens.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth_client: XeroOAuthClient,
        refresh_margin_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.oauth_client = oauth_client
        margin = (
            refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.xero_token_refresh_margin_seconds
        )
        self.refresh_margin = timedelta(seconds=margin)
        self._clock = clock

    def needs_refresh(self, credential: Credential) -> bool:
        return self._clock() >= credential.expires_at - self.refresh_margin

    async def get_valid_credential(self, user_id: str) -> Credential:
        """Return the user's credential holding a usable access token.

        Raises:
            XeroNotConnectedError: No credential, or the refresh grant was rejected
            XeroTransientError: Refresh could not reach Xero
            XeroAuthorizationError: Refresh failed for another reason
        """
        credential = await self.store.get(user_id)
        if credential is None:
            raise XeroNotConnectedError(f"User {user_id} has not connected Xero")

        if not self.needs_refresh(credential):
            return credential

        logger.info(f"Access token for {user_id} expires at {credential.expires_at.isoformat()}, refreshing")
        try:
            grant = await self.oauth_client.refresh(credential.refresh_token)
        except XeroGrantInvalidError as e:
            logger.warning(f"Refresh grant rejected for {user_id}, removing credential: {e}")
            await self.store.delete(user_id)
            raise XeroNotConnectedError(
                f"Xero authorization for {user_id} is no longer valid"
            ) from e
        except XeroTransientError:
            logger.warning(f"Token refresh for {user_id} failed transiently; credential kept")
            raise

        refreshed = await self.store.upsert(
            user_id=user_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=grant.expires_at(self._clock()),
            keep_tenant=True,
        )
        logger.info(f"Refreshed Xero token for {user_id}")
        return refreshed

    async def get_valid_access_token(self, user_id: str) -> str:
        """Return a usable access token for the user.

        Raises:
            XeroNotConnectedError: No credential, or the refresh grant was rejected
            XeroTransientError: Refresh could not reach Xero
        """
        credential = await self.get_valid_credential(user_id)
        return credential.access_token

    async def mark_stale(self, user_id: str) -> None:
        """Force the next request for this user to refresh first.

        Called when Xero answers 401 to a token we believed valid.
        """
        stale_at = self._clock() - self.refresh_margin - timedelta(seconds=1)
        await self.store.mark_stale(user_id, stale_at)
