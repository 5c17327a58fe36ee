"""Credential store: one decrypted Xero credential record per user."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.models.base import as_utc
from bizmate.models.credential import XeroCredential
from bizmate.services.encryption import EncryptionService

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    """Decrypted view of a stored credential."""
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    updated_at: Optional[datetime] = None


class CredentialStore:
    """Get/upsert/delete credentials keyed by user id.

    Tokens are encrypted before they reach the database. Every mutation is
    committed immediately, so a refreshed token survives a failure later in
    the same unit of work.
    """

    def __init__(
        self,
        db: AsyncSession,
        encryption_service: Optional[EncryptionService] = None,
    ):
        """Initialize CredentialStore.

        Args:
            db: Async SQLAlchemy session
            encryption_service: Token cipher. Defaults to one built from settings.
        """
        self.db = db
        self._encryption = encryption_service or EncryptionService()

    async def _get_row(self, user_id: str) -> Optional[XeroCredential]:
        result = await self.db.execute(
            select(XeroCredential).where(XeroCredential.user_id == user_id)
        )
        return result.scalar_one_or_none()

    def _to_record(self, row: XeroCredential) -> Credential:
        return Credential(
            user_id=row.user_id,
            access_token=self._encryption.decrypt(row.access_token_encrypted),
            refresh_token=self._encryption.decrypt(row.refresh_token_encrypted),
            expires_at=as_utc(row.expires_at),
            tenant_id=row.tenant_id,
            tenant_name=row.tenant_name,
            updated_at=as_utc(row.updated_at or row.created_at),
        )

    async def get(self, user_id: str) -> Optional[Credential]:
        """Load the credential for a user, or None if never connected."""
        row = await self._get_row(user_id)
        if row is None:
            return None
        return self._to_record(row)

    async def upsert(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        tenant_id: Optional[str] = None,
        tenant_name: Optional[str] = None,
        keep_tenant: bool = False,
    ) -> Credential:
        """Insert or replace the credential for a user.

        Args:
            user_id: Owner of the credential
            access_token: New bearer token
            refresh_token: New refresh token
            expires_at: Absolute expiry of the access token
            tenant_id: Resolved organisation id
            tenant_name: Resolved organisation name
            keep_tenant: Keep the stored tenant when tenant_id is None
                (used by token refresh, which does not resolve tenants)

        Returns:
            The stored credential
        """
        row = await self._get_row(user_id)
        if row is None:
            row = XeroCredential(user_id=user_id)
            self.db.add(row)

        row.access_token_encrypted = self._encryption.encrypt(access_token)
        row.refresh_token_encrypted = self._encryption.encrypt(refresh_token)
        row.expires_at = expires_at
        if tenant_id is not None or not keep_tenant:
            row.tenant_id = tenant_id
            row.tenant_name = tenant_name

        await self.db.commit()
        await self.db.refresh(row)
        logger.info(f"Stored Xero credential for {user_id} (tenant={row.tenant_name})")
        return self._to_record(row)

    async def mark_stale(self, user_id: str, at: datetime) -> None:
        """Move the expiry back so the next token request refreshes."""
        row = await self._get_row(user_id)
        if row is None:
            return
        row.expires_at = at
        await self.db.commit()

    async def delete(self, user_id: str) -> bool:
        """Remove a user's credential.

        Returns:
            True if a row was deleted
        """
        result = await self.db.execute(
            delete(XeroCredential).where(XeroCredential.user_id == user_id)
        )
        await self.db.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted Xero credential for {user_id}")
        return deleted

    async def count_connected(self) -> int:
        """Number of users holding a credential."""
        result = await self.db.execute(
            select(func.count()).select_from(XeroCredential)
        )
        return result.scalar_one()

    async def connection_status(self, user_id: str) -> Dict[str, Any]:
        """Connection summary for health checks, without decrypting tokens."""
        row = await self._get_row(user_id)
        connected = row is not None
        last_updated = None
        if row is not None:
            last_updated = as_utc(row.updated_at or row.created_at)
        return {
            "status": "connected" if connected else "disconnected",
            "connected": connected,
            "tenant_name": row.tenant_name if row is not None else None,
            "last_updated": last_updated.isoformat() if last_updated else None,
        }
