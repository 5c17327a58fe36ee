"""API endpoints package."""

from bizmate.api.endpoints import health, oauth, webhook

__all__ = ["health", "oauth", "webhook"]
