"""Common dependencies for API endpoints.

Long-lived clients are created in the application lifespan and kept on
``app.state``; endpoints reach them through these functions so tests can
swap them with ``app.dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.core.database import get_db
from bizmate.services.authorization import AuthorizationFlow
from bizmate.services.dedupe import EventDeduplicator
from bizmate.services.messaging import MessageRouter
from bizmate.services.ocr import OCRService
from bizmate.services.xero_auth import XeroOAuthClient

# Type alias for database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]


def get_oauth_client(request: Request) -> XeroOAuthClient:
    return request.app.state.oauth_client


def get_ocr_service(request: Request) -> OCRService:
    return request.app.state.ocr_service


def get_message_router(request: Request) -> MessageRouter:
    return request.app.state.message_router


def get_deduplicator(request: Request) -> EventDeduplicator:
    return request.app.state.deduplicator


def get_authorization_flow(
    db: DBSession,
    oauth_client: Annotated[XeroOAuthClient, Depends(get_oauth_client)],
) -> AuthorizationFlow:
    return AuthorizationFlow(db, oauth_client)
