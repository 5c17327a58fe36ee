"""Xero authorization flow: consent URL issuance and callback consumption."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode
from bizmate.models.base import as_utc, utc_now
from bizmate.models.credential import AuthorizationState
from bizmate.services.credentials import CredentialStore
from bizmate.services.xero_auth import XeroAuthorizationError, XeroError, XeroOAuthClient

logger = logging.getLogger(__name__)


def authorization_link(user_id: str, base_url: Optional[str] = None) -> str:
    """Link to this service's /auth endpoint, which starts the flow for the user."""
    base = (base_url or settings.public_base_url).rstrip("/")
    return f"{base}/auth?{urlencode({'user_id': user_id})}"


class AuthorizationResult(BaseModel):
    """Outcome of an authorization callback."""
    success: bool
    user_id: Optional[str] = None
    tenant_name: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @property
    def message(self) -> str:
        if self.success:
            return f"成功连接到 Xero: {self.tenant_name or '未命名组织'}"
        return f"Xero 授权失败: {self.error}"


class AuthorizationFlow:
    """Issues consent URLs and consumes the matching callbacks.

    Each consent URL carries a random correlation token stored with the
    requesting user and an expiry. A callback consumes the token exactly
    once; reused, unknown or expired tokens are rejected before any
    provider call is made.
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth_client: XeroOAuthClient,
        store: Optional[CredentialStore] = None,
        state_ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.oauth_client = oauth_client
        self.store = store or CredentialStore(db)
        self.state_ttl = timedelta(
            seconds=state_ttl_seconds
            if state_ttl_seconds is not None
            else settings.xero_auth_state_ttl_seconds
        )
        self._clock = clock

    async def issue_authorization_url(self, user_id: str) -> str:
        """Create a correlation state for the user and return the consent URL."""
        await self.sweep_expired_states()

        state = secrets.token_urlsafe(32)
        self.db.add(AuthorizationState(
            state=state,
            user_id=user_id,
            expires_at=self._clock() + self.state_ttl,
        ))
        await self.db.commit()

        params = urlencode({
            "response_type": "code",
            "client_id": self.oauth_client.client_id,
            "redirect_uri": self.oauth_client.redirect_uri,
            "scope": settings.xero_scopes,
            "state": state,
        })
        logger.info(f"Issued Xero authorization URL for {user_id}")
        return f"{settings.xero_auth_url}?{params}"

    async def _consume_state(self, state: str) -> Optional[str]:
        """Delete the correlation state and return its user, if still live."""
        result = await self.db.execute(
            select(AuthorizationState).where(AuthorizationState.state == state)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None

        user_id = row.user_id
        expires_at = as_utc(row.expires_at)

        deleted = await self.db.execute(
            delete(AuthorizationState).where(AuthorizationState.state == state)
        )
        await self.db.commit()

        # A concurrent callback already took it
        if deleted.rowcount != 1:
            return None
        if self._clock() >= expires_at:
            return None
        return user_id

    async def consume_callback(self, code: str, state: str) -> AuthorizationResult:
        """Finish an authorization attempt.

        Args:
            code: Authorization code from the provider redirect
            state: Correlation token from the provider redirect

        Returns:
            AuthorizationResult. Failures carry the provider's error
            description verbatim and leave no credential behind.
        """
        user_id = await self._consume_state(state) if state else None
        if user_id is None:
            logger.warning("Authorization callback with invalid or expired state")
            return AuthorizationResult(
                success=False,
                error="Invalid or expired state",
                error_code=ErrorCode.AUTH_INVALID_STATE,
            )

        try:
            grant = await self.oauth_client.exchange_code(code)
            if not grant.refresh_token:
                raise XeroAuthorizationError(
                    "Xero did not return a refresh token; offline_access scope is required"
                )
            connections = await self.oauth_client.get_connections(grant.access_token)
        except XeroError as e:
            logger.error(f"Xero authorization failed for {user_id}: {e.message}")
            return AuthorizationResult(
                success=False,
                user_id=user_id,
                error=e.message,
                error_code=e.error_code,
            )

        # Single tenant per user: the first connection wins
        tenant = connections[0] if connections else None
        if tenant is None:
            logger.warning(f"Xero returned no connections for {user_id}")

        await self.store.upsert(
            user_id=user_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(self._clock()),
            tenant_id=tenant.tenant_id if tenant else None,
            tenant_name=tenant.tenant_name if tenant else None,
        )
        logger.info(f"Xero authorization successful for {user_id} (tenant={tenant.tenant_name if tenant else None})")
        return AuthorizationResult(
            success=True,
            user_id=user_id,
            tenant_name=tenant.tenant_name if tenant else None,
        )

    async def disconnect(self, user_id: str) -> bool:
        """Explicit disconnect: remove the user's credential."""
        return await self.store.delete(user_id)

    async def sweep_expired_states(self) -> int:
        """Delete correlation states past their expiry."""
        result = await self.db.execute(
            delete(AuthorizationState)
            .where(AuthorizationState.expires_at <= self._clock())
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        return result.rowcount or 0
