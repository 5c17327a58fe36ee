"""Core application modules."""

from bizmate.core.config import settings
from bizmate.core.database import Base, get_db, get_db_context, init_db
from bizmate.core.logging import get_logger, mask_secret, setup_logging

__all__ = [
    "settings",
    "Base",
    "get_db",
    "get_db_context",
    "init_db",
    "get_logger",
    "mask_secret",
    "setup_logging",
]
