"""Xero credential and authorization-state models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bizmate.models.base import BaseModel


class XeroCredential(BaseModel):
    """One OAuth credential per chat user.

    Both tokens are stored Fernet-encrypted. The row exists from the first
    successful code exchange until the user disconnects or the provider
    rejects the refresh grant.

    Attributes:
        user_id: Stable "<platform>:<native id>" identifier (primary key)
        access_token_encrypted: Encrypted bearer token
        refresh_token_encrypted: Encrypted refresh token
        expires_at: Absolute expiry of the access token
        tenant_id: Xero organisation id, null until resolved
        tenant_name: Xero organisation display name
        updated_at: Last refresh or re-authorization (from BaseModel)
    """

    __tablename__ = "xero_credentials"

    user_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    access_token_encrypted: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    refresh_token_encrypted: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    tenant_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    tenant_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )


class AuthorizationState(BaseModel):
    """Correlation state binding an OAuth redirect to the user who started it.

    Single use: deleted on the first callback that presents it, or swept
    once ``expires_at`` has passed.
    """

    __tablename__ = "xero_authorization_states"

    state: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
