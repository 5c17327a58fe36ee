"""Routes inbound chat messages to the confirmation gate, OCR or the agent.

MessageRouter.handle_event runs after the webhook has acknowledged the
delivery. It opens its own database session, builds the per-user Xero
services on top of it, and always answers the user: either with the
result or with a short explanation of what went wrong.
"""

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Callable, Optional, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.core.database import get_db_context
from bizmate.core.errors import ServiceError
from bizmate.core.logging import LoggerAdapter
from bizmate.models.base import utc_now
from bizmate.services.agent import AgentService, ChatModelFactory, ConversationHistory
from bizmate.services.authorization import authorization_link
from bizmate.services.credentials import CredentialStore
from bizmate.services.feishu import FeishuError, FeishuMessageEvent
from bizmate.services.llm import LLMUnavailableError, create_chat_model
from bizmate.services.ocr import OCRError, OCRService
from bizmate.services.pending_invoices import (
    GateOutcome,
    PendingInvoiceGate,
    format_invoice_summary,
)
from bizmate.services.tools import REAUTHORIZE_ERRORS
from bizmate.services.xero import XeroGateway, XeroService
from bizmate.services.xero_auth import (
    TokenManager,
    XeroError,
    XeroOAuthClient,
    XeroRateLimitError,
    XeroTransientError,
)

logger = logging.getLogger(__name__)


THINKING_MESSAGE = "⏳ 正在思考..."
RECOGNIZING_MESSAGE = "⏳ 正在识别发票内容..."
TIMEOUT_MESSAGE = "⏱️ 请求超时了，请稍后再试。"
IMAGE_MISSING_MESSAGE = "❌ 无法获取图片"
IMAGE_DOWNLOAD_FAILED_MESSAGE = "❌ 无法下载图片，请重试"
HISTORY_CLEARED_MESSAGE = "🧹 对话记录已清空，我们重新开始吧。"
RESET_COMMANDS = ("/reset", "清空对话", "清除历史")
UNSUPPORTED_MESSAGE = (
    "😊 抱歉，我目前只能处理文字和图片消息。\n\n"
    "📷 发送发票照片可自动识别并创建Xero发票\n"
    "💬 发送文字可查询财务数据"
)

TRANSIENT_ERRORS = (
    asyncio.TimeoutError,
    XeroTransientError,
    XeroRateLimitError,
    LLMUnavailableError,
)


def not_connected_message(auth_url: str) -> str:
    return (
        "🔑 **Xero 账户未连接**\n\n"
        "请完成以下步骤：\n\n"
        f"1️⃣ 点击链接授权：\n{auth_url}\n\n"
        "2️⃣ 登录你的 Xero 账号\n\n"
        "3️⃣ 授权 Bizmate 访问财务数据\n\n"
        "4️⃣ 返回飞书继续对话\n\n"
        "⚠️ 只需授权一次，之后数据会自动同步"
    )


def ocr_failure_message(reason: str) -> str:
    return (
        f"❌ 发票识别失败: {reason}\n\n"
        "请确保：\n1. 图片清晰可读\n2. 是正规发票\n3. 重试或手动输入信息"
    )


def user_error_message(error: BaseException, auth_url: str) -> str:
    """User-facing text for a failure that ended message processing."""
    if isinstance(error, TRANSIENT_ERRORS):
        return TIMEOUT_MESSAGE
    if isinstance(error, XeroError) and error.error_code in REAUTHORIZE_ERRORS:
        return not_connected_message(auth_url)
    if isinstance(error, OCRError):
        return ocr_failure_message(error.message)
    reason = error.message if isinstance(error, ServiceError) else str(error)
    return f"抱歉，处理您的请求时出现了问题，请稍后再试。\n\n错误详情: {reason}"


class ChatTransport(Protocol):
    """Outbound side of the chat platform."""

    async def send_text(self, chat_id: str, text: str) -> None: ...

    async def download_image(self, message_id: str, image_key: str) -> bytes: ...


SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class MessageRouter:
    """Handles one inbound chat message end to end.

    - text: a reset command clears the conversation history; otherwise
      answers a pending invoice if there is one, or runs the agent
    - image: OCR, stage the result as a pending invoice, show the summary
    - anything else: a short capability hint
    """

    def __init__(
        self,
        transport: ChatTransport,
        ocr_service: OCRService,
        oauth_client: XeroOAuthClient,
        chat_model_factory: ChatModelFactory = create_chat_model,
        session_factory: SessionFactory = get_db_context,
        xero_http_client: Optional[httpx.AsyncClient] = None,
        auth_link_builder: Callable[[str], str] = authorization_link,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the router.

        Args:
            transport: Sends replies and fetches images
            ocr_service: Invoice recognition
            oauth_client: Xero token endpoint client used for refreshes
            chat_model_factory: Builds the tool-bound chat model
            session_factory: Opens a database session per event
            xero_http_client: Shared HTTP client for Xero API calls; a
                private one is created and closed per event when omitted
            auth_link_builder: Authorization link for a user
            clock: Source of the current time
        """
        self.transport = transport
        self.ocr_service = ocr_service
        self.oauth_client = oauth_client
        self.chat_model_factory = chat_model_factory
        self.session_factory = session_factory
        self.xero_http_client = xero_http_client
        self.auth_link_builder = auth_link_builder
        self._clock = clock

    def _build_gateway(self, db: AsyncSession) -> XeroGateway:
        token_manager = TokenManager(CredentialStore(db), self.oauth_client, clock=self._clock)
        return XeroGateway(token_manager, http_client=self.xero_http_client)

    async def handle_event(self, event: FeishuMessageEvent) -> None:
        """Process one message and reply to its chat. Never raises."""
        log = LoggerAdapter(logger, {"user_id": event.user_id, "message_id": event.message_id})
        log.info(f"Handling {event.message_type} message")

        try:
            async with self.session_factory() as db:
                gateway = self._build_gateway(db)
                try:
                    xero_service = XeroService(gateway, clock=self._clock)
                    gate = PendingInvoiceGate(db, xero_service, clock=self._clock)
                    if event.message_type == "text":
                        await self._handle_text(event, db, xero_service, gate, log)
                    elif event.message_type == "image":
                        await self._handle_image(event, gate, log)
                    else:
                        await self.transport.send_text(event.chat_id, UNSUPPORTED_MESSAGE)
                finally:
                    if self.xero_http_client is None:
                        await gateway.close()
        except FeishuError as e:
            log.error(f"Could not deliver reply: {e.message}")
        except Exception as e:
            log.exception(f"Message processing failed: {e}")
            await self.send_error(event, e)

    async def send_error(self, event: FeishuMessageEvent, error: BaseException) -> None:
        """Tell the user why their message could not be processed."""
        message = user_error_message(error, self.auth_link_builder(event.user_id))
        try:
            await self.transport.send_text(event.chat_id, message)
        except FeishuError as e:
            logger.error(f"Could not deliver error message to {event.chat_id}: {e.message}")

    async def _handle_text(
        self,
        event: FeishuMessageEvent,
        db: AsyncSession,
        xero_service: XeroService,
        gate: PendingInvoiceGate,
        log: LoggerAdapter,
    ) -> None:
        text = event.text
        if not text:
            log.info("Empty text message ignored")
            return

        if text.lower() in RESET_COMMANDS:
            await ConversationHistory(db).clear(event.user_id)
            log.info("Conversation history cleared")
            await self.transport.send_text(event.chat_id, HISTORY_CLEARED_MESSAGE)
            return

        resolution = await gate.resolve(event.user_id, text)
        if resolution is not None:
            log.info(f"Pending invoice reply resolved as {resolution.outcome.value}")
            message = resolution.message
            if (
                resolution.outcome is GateOutcome.FAILED
                and resolution.error is not None
                and resolution.error.error_code in REAUTHORIZE_ERRORS
            ):
                message = f"{message}\n\n{not_connected_message(self.auth_link_builder(event.user_id))}"
            await self.transport.send_text(event.chat_id, message)
            return

        await self.transport.send_text(event.chat_id, THINKING_MESSAGE)
        agent = AgentService(
            db=db,
            xero_service=xero_service,
            chat_model_factory=self.chat_model_factory,
            auth_link_builder=self.auth_link_builder,
        )
        reply = await agent.process_message(event.user_id, text)
        log.info(f"Agent replied with {len(reply)} chars")
        await self.transport.send_text(event.chat_id, reply)

    async def _handle_image(
        self,
        event: FeishuMessageEvent,
        gate: PendingInvoiceGate,
        log: LoggerAdapter,
    ) -> None:
        image_key = event.image_key
        if not image_key:
            await self.transport.send_text(event.chat_id, IMAGE_MISSING_MESSAGE)
            return

        await self.transport.send_text(event.chat_id, RECOGNIZING_MESSAGE)
        try:
            image = await self.transport.download_image(event.message_id, image_key)
        except FeishuError as e:
            log.warning(f"Image download failed: {e.message}")
            await self.transport.send_text(event.chat_id, IMAGE_DOWNLOAD_FAILED_MESSAGE)
            return
        record = await self.ocr_service.recognize_image(image)
        log.info(f"Recognised invoice {record.invoice_num or '(no number)'} via {record.provider}")

        await gate.stage(event.user_id, record)
        await self.transport.send_text(event.chat_id, format_invoice_summary(record))
