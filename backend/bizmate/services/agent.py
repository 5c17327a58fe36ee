"""Tool-calling orchestrator for the Bizmate assistant.

This module provides:
- ConversationHistory, the per-user turn log pruned to the last N entries
- AgentService, which drives a bounded model/tool loop: call the model with
  the registered tools, execute any requested tool calls in order, feed the
  results back, and stop once the model answers in plain text
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import Runnable
from langchain_core.tools import BaseTool
from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode, SUGGESTED_ACTIONS, ServiceError
from bizmate.models.conversation import ConversationTurn
from bizmate.services.authorization import authorization_link
from bizmate.services.llm import create_chat_model, invoke_chat_model
from bizmate.services.tools import ToolRegistry, create_xero_tools
from bizmate.services.xero import XeroService

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """你是 Bizmate，专为海外华人中小企业打造的 AI 运营助手。

你的使命：让华人企业主用母语就能高效管理生意，成为他们的 AI 运营合伙人。

## 已接入的 Xero 财务插件
你可以通过工具帮助用户：
1. 查询应收账款 - 谁欠我钱？欠多少？
2. 创建发票 - 为客户开具账单（草稿状态）
3. 查询发票列表、客户列表、某个客户的历史发票
4. BAS/GST 税务解读 - 用中文解释要交多少税、什么时候交、怎么优化
5. 现金流预测 - 预测未来资金情况，预警资金缺口
6. 获取发票 PDF 和在线查看链接
7. 发票识别 - 用户直接发送发票照片即可自动识别

## 工作规则
- 涉及财务数据时必须调用工具获取实时数据，不要编造数字
- 工具返回 error 字段时，用中文向用户解释原因和下一步操作
- 工具结果里有 auth_url 时，必须把这个授权链接原样发给用户
- 金额保留两位小数，善用 emoji 和列表让数据直观

## 回答风格
- 专业但亲切，像一位经验丰富的财务顾问
- 主动思考用户可能的下一步需求
- 不清楚时诚实告知，不瞎编"""

EMPTY_REPLY = "抱歉，我暂时没有想好怎么回答，请换个说法再试一次。"


# =============================================================================
# Exceptions
# =============================================================================


class AgentError(ServiceError):
    """Base exception for orchestrator errors."""
    error_code = ErrorCode.INTERNAL_ERROR


class ToolLoopExceededError(AgentError):
    """The model kept requesting tools past the iteration cap."""
    error_code = ErrorCode.TOOL_LOOP_EXCEEDED

    def __init__(self, iterations: int):
        super().__init__(f"No final answer after {iterations} model calls")
        self.iterations = iterations


# =============================================================================
# Conversation History
# =============================================================================


class ConversationHistory:
    """Append-only turn log keeping only the most recent ``limit`` turns per user."""

    def __init__(self, db: AsyncSession, limit: Optional[int] = None):
        self.db = db
        self.limit = limit if limit is not None else settings.conversation_history_limit

    async def load(self, user_id: str) -> List[ConversationTurn]:
        """Most recent turns for the user, oldest first."""
        result = await self.db.execute(
            select(ConversationTurn)
            .where(ConversationTurn.user_id == user_id)
            .order_by(ConversationTurn.id.desc())
            .limit(self.limit)
        )
        return list(reversed(result.scalars().all()))

    async def append_exchange(self, user_id: str, user_text: str, reply: str) -> None:
        """Persist a user/assistant pair, then prune older turns."""
        self.db.add(ConversationTurn(user_id=user_id, role="user", content=user_text))
        self.db.add(ConversationTurn(user_id=user_id, role="assistant", content=reply))
        await self.db.flush()
        await self.prune(user_id)
        await self.db.commit()

    async def prune(self, user_id: str) -> None:
        keep = (
            select(ConversationTurn.id)
            .where(ConversationTurn.user_id == user_id)
            .order_by(ConversationTurn.id.desc())
            .limit(self.limit)
        )
        await self.db.execute(
            delete(ConversationTurn).where(
                ConversationTurn.user_id == user_id,
                ConversationTurn.id.not_in(keep.scalar_subquery()),
            )
        )

    async def clear(self, user_id: str) -> None:
        await self.db.execute(
            delete(ConversationTurn).where(ConversationTurn.user_id == user_id)
        )
        await self.db.commit()


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def _tool_error(error_code: ErrorCode, message: str) -> Dict[str, Any]:
    return {
        "error": error_code.value,
        "message": message,
        "action_required": SUGGESTED_ACTIONS.get(error_code),
    }


# =============================================================================
# Agent Service
# =============================================================================


ChatModelFactory = Callable[[Sequence[BaseTool]], Runnable]


class AgentService:
    """Runs one user message through the model/tool loop.

    Each model call is one iteration. While the model returns tool calls,
    they are executed in the order requested and their results appended as
    tool messages keyed by call id. A plain-text answer ends the loop, and
    the user/assistant pair is saved to history. Reaching
    ``max_iterations`` model calls without a plain answer raises
    ToolLoopExceededError.

    Example:
        ```python
        agent = AgentService(db=db, xero_service=xero_service)
        reply = await agent.process_message("feishu:ou_123", "谁欠我钱")
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        xero_service: XeroService,
        chat_model_factory: ChatModelFactory = create_chat_model,
        history: Optional[ConversationHistory] = None,
        max_iterations: Optional[int] = None,
        auth_link_builder: Callable[[str], str] = authorization_link,
    ):
        """Initialize the agent service.

        Args:
            db: Database session for conversation history
            xero_service: Accounting operations behind the tools
            chat_model_factory: Builds the tool-bound chat model
            history: Conversation log; defaults to one on ``db``
            max_iterations: Cap on model calls per message
            auth_link_builder: Re-authorization link for a user
        """
        self.db = db
        self.xero_service = xero_service
        self.chat_model_factory = chat_model_factory
        self.history = history or ConversationHistory(db)
        self.max_iterations = max_iterations or settings.max_tool_iterations
        self.auth_link_builder = auth_link_builder

    def build_registry(self, user_id: str) -> ToolRegistry:
        return ToolRegistry(
            create_xero_tools(
                self.xero_service,
                user_id,
                auth_url=self.auth_link_builder(user_id),
            )
        )

    async def _build_messages(self, user_id: str, text: str) -> List[BaseMessage]:
        messages: List[BaseMessage] = [SystemMessage(content=SYSTEM_PROMPT)]
        for turn in await self.history.load(user_id):
            if turn.role == "user":
                messages.append(HumanMessage(content=turn.content))
            else:
                messages.append(AIMessage(content=turn.content))
        messages.append(HumanMessage(content=text))
        return messages

    @staticmethod
    def _ordered_calls(response: AIMessage) -> List[Tuple[Dict[str, Any], bool]]:
        """Valid and malformed tool calls, in the order the model emitted them."""
        calls = [(call, True) for call in response.tool_calls]
        calls += [(call, False) for call in response.invalid_tool_calls]

        raw = response.additional_kwargs.get("tool_calls") or []
        order = {item.get("id"): index for index, item in enumerate(raw) if isinstance(item, dict)}
        if order:
            calls.sort(key=lambda pair: order.get(pair[0].get("id"), len(order)))
        return calls

    async def _execute_tool_call(
        self,
        registry: ToolRegistry,
        call: Dict[str, Any],
        valid: bool,
    ) -> Tuple[ToolMessage, Any]:
        name = call.get("name") or ""
        call_id = call.get("id") or ""

        if not valid:
            logger.warning(f"Malformed arguments for tool {name}: {call.get('error')}")
            result: Any = _tool_error(
                ErrorCode.INVALID_TOOL_ARGUMENTS,
                f"Arguments for {name} are not valid JSON",
            )
        elif name not in registry:
            logger.warning(f"Model requested unknown tool: {name}")
            result = _tool_error(ErrorCode.TOOL_NOT_FOUND, f"Unknown tool: {name}")
        else:
            logger.info(f"Executing tool {name} with args {call.get('args')}")
            try:
                result = await registry.get(name).ainvoke(call.get("args") or {})
            except ValidationError as e:
                result = _tool_error(ErrorCode.INVALID_TOOL_ARGUMENTS, str(e))

        content = json.dumps(result, ensure_ascii=False, default=str)
        return ToolMessage(content=content, tool_call_id=call_id, name=name), result

    async def process_message(self, user_id: str, text: str) -> str:
        """Answer one user message, using tools as the model requests.

        Args:
            user_id: Stable user id (platform prefix + platform user id)
            text: The user's message

        Returns:
            The assistant's reply text

        Raises:
            ToolLoopExceededError: The model never produced a plain answer
            LLMError: The model call failed
        """
        registry = self.build_registry(user_id)
        llm = self.chat_model_factory(registry.tools)
        messages = await self._build_messages(user_id, text)
        auth_url: Optional[str] = None

        for iteration in range(self.max_iterations):
            logger.info(f"[{user_id}] Iteration {iteration + 1}/{self.max_iterations}")
            response = await invoke_chat_model(llm, messages)
            messages.append(response)

            calls = self._ordered_calls(response)
            if not calls:
                reply = _message_text(response).strip() or EMPTY_REPLY
                if auth_url and auth_url not in reply:
                    reply = f"{reply}\n\n🔗 授权链接: {auth_url}"
                await self.history.append_exchange(user_id, text, reply)
                return reply

            logger.info(f"[{user_id}] Model requested tools: {[call.get('name') for call, _ in calls]}")
            for call, valid in calls:
                tool_message, result = await self._execute_tool_call(registry, call, valid)
                messages.append(tool_message)
                if isinstance(result, dict) and result.get("auth_url"):
                    auth_url = result["auth_url"]

        logger.warning(f"[{user_id}] Tool loop did not converge after {self.max_iterations} iterations")
        raise ToolLoopExceededError(self.max_iterations)
