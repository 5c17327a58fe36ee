"""SQLAlchemy models package.

All models should be imported here to ensure they are registered
with SQLAlchemy's metadata before database initialization.
"""

from bizmate.models.base import BaseModel, TimestampMixin, as_utc, utc_now
from bizmate.models.credential import AuthorizationState, XeroCredential
from bizmate.models.conversation import ConversationTurn
from bizmate.models.pending_invoice import PendingInvoice

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "as_utc",
    "utc_now",
    "XeroCredential",
    "AuthorizationState",
    "ConversationTurn",
    "PendingInvoice",
]
