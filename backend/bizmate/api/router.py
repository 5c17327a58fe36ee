"""Main API router that aggregates all endpoint routers."""

from fastapi import APIRouter

from bizmate.api.endpoints import health, oauth, webhook

# Feishu and Xero call these paths directly, so there is no prefix
api_router = APIRouter()

api_router.include_router(oauth.router, tags=["Xero Authorization"])
api_router.include_router(webhook.router, tags=["Feishu"])
api_router.include_router(health.router, tags=["Health"])
