"""Pending-invoice confirmation gate.

An invoice recognised from a photo is not created straight away. It is
staged here, shown to the user, and only sent to Xero once the user
replies with a confirmation word. Each user has at most one pending
invoice; staging a new one replaces the old one.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.core.config import settings
from bizmate.models.base import as_utc, utc_now
from bizmate.models.pending_invoice import PendingInvoice
from bizmate.services.ocr import InvoiceRecord, normalize_invoice_date
from bizmate.services.xero import InvoiceDraft, XeroInvoice, XeroService
from bizmate.services.xero_auth import XeroError

logger = logging.getLogger(__name__)


CONFIRM_WORDS = ("确认", "是的", "ok", "yes", "confirm")
# Negations sit here too so "不要确认" never reaches the confirm check
CANCEL_WORDS = (
    "修改", "取消", "不要", "不用", "不确认", "先别", "别创建", "别建",
    "cancel", "no", "not", "don't", "dont",
)

UNNAMED_CUSTOMER = "未命名客户"

PROMPT_MESSAGE = (
    "🤔 我检测到您有待确认的发票。\n\n"
    "请回复：\n"
    "• **确认** - 创建发票\n"
    "• **修改/取消** - 重新开始\n\n"
    "或直接发送新消息继续其他操作。"
)

CANCEL_MESSAGE = (
    "📝 已取消发票创建。\n\n"
    "您可以重新发送发票照片，或直接告诉我正确的发票信息，例如：\n"
    "\"为 ABC 公司创建一张 500 元的发票\""
)

REGION_TAGS = {"AU": "🇦🇺 澳洲", "NZ": "🇳🇿 新西兰", "CN": "🇨🇳 中国"}
PROVIDER_TAGS = {"google": "🌐 Google Vision", "baidu": "🇨🇳 百度OCR"}


class GateOutcome(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    UNRECOGNIZED = "unrecognized"
    FAILED = "failed"


@dataclass
class GateResolution:
    """Result of answering a pending invoice.

    ``invoice`` is set on a successful confirmation; ``error`` when the
    confirmation reached Xero and failed.
    """
    outcome: GateOutcome
    message: str
    invoice: Optional[XeroInvoice] = None
    error: Optional[XeroError] = None


# =============================================================================
# Reply Classification
# =============================================================================


def _contains_word(text: str, word: str) -> bool:
    if word.isascii():
        return re.search(rf"(?<![a-z]){re.escape(word)}(?![a-z])", text) is not None
    return word in text


def classify_reply(reply: str) -> GateOutcome:
    """Map a free-text reply to confirm, cancel or unrecognized.

    Cancel words win over confirm words, so "确认取消" cancels.
    """
    text = (reply or "").strip().lower()
    if any(_contains_word(text, word) for word in CANCEL_WORDS):
        return GateOutcome.CANCEL
    if any(_contains_word(text, word) for word in CONFIRM_WORDS):
        return GateOutcome.CONFIRM
    return GateOutcome.UNRECOGNIZED


# =============================================================================
# Presentation
# =============================================================================


def _currency_symbol(record: InvoiceRecord) -> str:
    return "$" if record.is_au_nz else "¥"


def format_invoice_summary(record: InvoiceRecord) -> str:
    """Chat message showing the recognised invoice and how to answer."""
    provider_tag = PROVIDER_TAGS.get(record.provider, "")
    region_tag = REGION_TAGS.get(record.invoice_region or "", "")
    lines = [f"📄 **发票识别结果** {provider_tag} {region_tag}".rstrip(), ""]

    if record.invoice_type:
        lines.append(f"🧾 发票类型: {record.invoice_type}")
    if record.seller_name:
        lines.append(f"🏢 销售方: {record.seller_name}")
    if record.abn:
        lines.append(f"📋 ABN: {record.abn}")
    elif record.nzbn:
        lines.append(f"📋 NZBN: {record.nzbn}")
    elif record.seller_register_num:
        lines.append(f"📋 税号: {record.seller_register_num}")
    if record.purchaser_name:
        lines.append(f"👤 购买方: {record.purchaser_name}")
    if record.invoice_date:
        lines.append(f"📅 开票日期: {record.invoice_date}")
    if record.invoice_num:
        lines.append(f"🔢 发票号码: {record.invoice_num}")
    if record.amount:
        lines.append(f"💰 金额: {_currency_symbol(record)}{record.amount:.2f}")
    if record.is_au_nz and record.total_tax:
        lines.append(f"📊 GST: ${record.total_tax:.2f}")
    if record.commodity_name:
        commodity = record.commodity_name
        if len(commodity) > 50:
            commodity = commodity[:50] + "..."
        lines.append(f"📦 商品/服务: {commodity}")

    lines += [
        "",
        "请确认以上信息是否正确？",
        "回复 \"确认\" 直接创建发票",
        "回复 \"修改\" 告诉我需要修改的内容",
    ]
    return "\n".join(lines)


def to_invoice_draft(record: InvoiceRecord) -> InvoiceDraft:
    """Draft sales invoice built from a recognised invoice."""
    description = f"发票识别: {record.commodity_name or '商品服务'}"
    if record.invoice_num:
        description += f" (编号: {record.invoice_num})"
    if record.is_au_nz:
        if record.abn:
            description += f" [ABN: {record.abn}]"
        elif record.nzbn:
            description += f" [NZBN: {record.nzbn}]"
        if record.total_tax:
            description += f" [GST: ${record.total_tax:.2f}]"

    return InvoiceDraft(
        customer_name=record.purchaser_name.strip() or UNNAMED_CUSTOMER,
        amount=record.amount,
        description=description,
        invoice_date=normalize_invoice_date(record.invoice_date),
        reference=record.invoice_num or None,
    )


def success_message(invoice: XeroInvoice) -> str:
    invoice_date = invoice.invoice_date.isoformat() if invoice.invoice_date else "-"
    return (
        "✅ 发票创建成功！\n\n"
        f"📄 发票ID: {invoice.invoice_id}\n"
        f"👤 客户: {invoice.customer_name}\n"
        f"💰 金额: ${invoice.total:.2f}\n"
        f"📅 日期: {invoice_date}"
    )


def failure_message(error: XeroError) -> str:
    return f"❌ **创建发票失败**\n\n{error.message}\n\n回复 \"确认\" 可重试，或回复 \"取消\" 放弃。"


# =============================================================================
# Gate
# =============================================================================


class PendingInvoiceGate:
    """Stages recognised invoices and resolves the user's answer.

    Example:
        ```python
        gate = PendingInvoiceGate(db, xero_service)
        await gate.stage(user_id, record)
        resolution = await gate.resolve(user_id, "确认")
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        xero_service: XeroService,
        ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.xero_service = xero_service
        self.ttl = ttl or timedelta(minutes=settings.pending_invoice_ttl_minutes)
        self._clock = clock

    async def stage(
        self,
        user_id: str,
        record: InvoiceRecord,
        ttl: Optional[timedelta] = None,
    ) -> PendingInvoice:
        """Replace any pending invoice for the user with ``record``."""
        await self.db.execute(delete(PendingInvoice).where(PendingInvoice.user_id == user_id))
        pending = PendingInvoice(
            user_id=user_id,
            invoice_data=record.model_dump(mode="json"),
            expires_at=self._clock() + (ttl or self.ttl),
        )
        self.db.add(pending)
        await self.db.commit()
        logger.info(f"Staged pending invoice for {user_id}, expires {pending.expires_at.isoformat()}")
        return pending

    async def sweep_expired(self) -> int:
        """Delete every expired pending invoice, for all users."""
        # Rows loaded back from SQLite carry naive datetimes, so the session
        # is synchronised by fetching rather than evaluating in Python
        result = await self.db.execute(
            delete(PendingInvoice)
            .where(PendingInvoice.expires_at <= self._clock())
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        if result.rowcount:
            logger.info(f"Swept {result.rowcount} expired pending invoices")
        return result.rowcount or 0

    async def peek(self, user_id: str) -> Optional[InvoiceRecord]:
        """The user's live pending invoice, or None."""
        await self.sweep_expired()
        result = await self.db.execute(
            select(PendingInvoice).where(PendingInvoice.user_id == user_id)
        )
        pending = result.scalar_one_or_none()
        if pending is None or as_utc(pending.expires_at) <= self._clock():
            return None
        return InvoiceRecord.model_validate(pending.invoice_data)

    async def clear(self, user_id: str) -> bool:
        result = await self.db.execute(
            delete(PendingInvoice).where(PendingInvoice.user_id == user_id)
        )
        await self.db.commit()
        return bool(result.rowcount)

    async def resolve(self, user_id: str, reply: str) -> Optional[GateResolution]:
        """Apply the user's reply to their pending invoice.

        Returns None when nothing is pending. A failed confirmation keeps the
        pending invoice so the user can confirm again without resending the
        photo.
        """
        record = await self.peek(user_id)
        if record is None:
            return None

        outcome = classify_reply(reply)
        if outcome is GateOutcome.CANCEL:
            await self.clear(user_id)
            logger.info(f"Pending invoice cancelled by {user_id}")
            return GateResolution(GateOutcome.CANCEL, CANCEL_MESSAGE)

        if outcome is GateOutcome.UNRECOGNIZED:
            return GateResolution(GateOutcome.UNRECOGNIZED, PROMPT_MESSAGE)

        try:
            invoice = await self.xero_service.create_invoice(user_id, to_invoice_draft(record))
        except XeroError as e:
            logger.warning(f"Confirmed invoice creation failed for {user_id}: {e.error_code.value} {e.message}")
            return GateResolution(GateOutcome.FAILED, failure_message(e), error=e)

        await self.clear(user_id)
        return GateResolution(GateOutcome.CONFIRM, success_message(invoice), invoice=invoice)
