"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from redis.asyncio import Redis

from bizmate.api.router import api_router
from bizmate.core.config import settings
from bizmate.core.database import close_db, init_db
from bizmate.core.logging import get_logger, setup_logging
from bizmate.services.dedupe import EventDeduplicator
from bizmate.services.feishu import FeishuClient
from bizmate.services.messaging import MessageRouter
from bizmate.services.ocr import OCRService
from bizmate.services.xero_auth import XeroOAuthClient

# Set up logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Database URL: {settings.database_url.split('@')[-1] if '@' in settings.database_url else settings.database_url}")

    await init_db()
    logger.info("Database initialized")

    app.state.redis = Redis.from_url(settings.redis_url)
    app.state.deduplicator = EventDeduplicator(app.state.redis)
    app.state.feishu = FeishuClient()
    app.state.ocr_service = OCRService()
    app.state.oauth_client = XeroOAuthClient()
    app.state.message_router = MessageRouter(
        transport=app.state.feishu,
        ocr_service=app.state.ocr_service,
        oauth_client=app.state.oauth_client,
    )
    logger.info(f"OCR providers available: {app.state.ocr_service.status()['available']}")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")
    await app.state.feishu.close()
    await app.state.ocr_service.close()
    await app.state.oauth_client.close()
    await app.state.redis.aclose()
    await close_db()
    logger.info("Connections closed")


app = FastAPI(
    title="Bizmate",
    description="Feishu business assistant backed by Xero, an LLM and invoice OCR",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(api_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "status": "running",
        "service": "bizmate",
        "webhook": "/feishu-webhook",
        "auth": "/auth?user_id=<user_id>",
    }
