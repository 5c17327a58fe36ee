"""Logging configuration for the application."""

import logging
import sys
from typing import Any

from bizmate.core.config import settings


def setup_logging(level: int | None = None) -> None:
    """Configure application logging.

    Sets up a single stdout handler. The level follows the debug setting
    unless an explicit level is given.
    """
    log_level = level if level is not None else (
        logging.DEBUG if settings.debug else logging.INFO
    )

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    logging.getLogger("bizmate").setLevel(log_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger namespaced under the application logger.

    Args:
        name: The name of the module (typically __name__)

    Returns:
        A configured logger instance
    """
    if name.startswith("bizmate.") or name == "bizmate":
        return logging.getLogger(name)
    return logging.getLogger(f"bizmate.{name}")


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Shorten a token or code so it can appear in log lines.

    Example:
        >>> mask_secret("abcdef123456")
        'abcd…(12)'
    """
    if not value:
        return "<empty>"
    return f"{value[:visible]}…({len(value)})"


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that appends key=value context to every message.

    Usage:
        logger = LoggerAdapter(get_logger(__name__), {"user_id": "feishu:ou_1"})
        logger.info("Event processed")  # "Event processed - user_id=feishu:ou_1"
    """

    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        """Process the log message to include extra context."""
        extra = " - ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"{msg} - {extra}" if extra else msg, kwargs
