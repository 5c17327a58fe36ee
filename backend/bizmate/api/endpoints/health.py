"""Health check endpoint with service status.

Reports the database, Xero connection counts, OCR providers and LLM
configuration. With ``user_id`` it also reports that user's Xero
connection.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.api.deps import DBSession, get_ocr_service
from bizmate.core.config import settings
from bizmate.models.base import utc_now
from bizmate.services.credentials import CredentialStore
from bizmate.services.llm import llm_status
from bizmate.services.ocr import OCRService

logger = logging.getLogger(__name__)

router = APIRouter()

VERSION = "0.1.0"


class ServiceStatus(BaseModel):
    """Status of an individual service."""
    available: bool
    message: Optional[str] = None
    latency_ms: Optional[float] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    version: str
    database: ServiceStatus
    xero: Dict[str, Any]
    ocr: Dict[str, Any]
    llm: Dict[str, Any]
    user: Optional[Dict[str, Any]] = None


async def check_database(db: AsyncSession) -> ServiceStatus:
    """Check database connectivity."""
    try:
        start = datetime.now()
        await db.execute(text("SELECT 1"))
        latency = (datetime.now() - start).total_seconds() * 1000
        return ServiceStatus(available=True, latency_ms=latency)
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return ServiceStatus(available=False, message=str(e))


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: DBSession,
    ocr_service: Annotated[OCRService, Depends(get_ocr_service)],
    user_id: Optional[str] = None,
) -> HealthResponse:
    """Service health, optionally with one user's Xero connection.

    Status values:
    - "healthy": database reachable and OCR and LLM configured
    - "degraded": database reachable, OCR or LLM not configured
    - "unhealthy": database unreachable
    """
    database = await check_database(db)
    ocr = ocr_service.status()
    llm = llm_status()

    xero: Dict[str, Any] = {"configured": bool(settings.xero_client_id and settings.xero_client_secret)}
    user: Optional[Dict[str, Any]] = None
    if database.available:
        store = CredentialStore(db)
        xero["total_connected_users"] = await store.count_connected()
        if user_id:
            user = {"user_id": user_id, **await store.connection_status(user_id)}

    if not database.available:
        status = "unhealthy"
    elif ocr["available"] and llm["configured"]:
        status = "healthy"
    else:
        status = "degraded"

    return HealthResponse(
        status=status,
        timestamp=utc_now().isoformat(),
        version=VERSION,
        database=database,
        xero=xero,
        ocr=ocr,
        llm=llm,
        user=user,
    )
