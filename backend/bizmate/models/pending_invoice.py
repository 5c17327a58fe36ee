"""Pending invoice model for the confirmation gate."""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from bizmate.models.base import BaseModel


class PendingInvoice(BaseModel):
    """An OCR-extracted invoice waiting for the user to confirm or cancel.

    At most one row per user: staging a new invoice replaces the old one.
    """

    __tablename__ = "pending_invoices"

    user_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    invoice_data: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
