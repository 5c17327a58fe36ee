"""Chat model construction for any OpenAI-compatible completions API.

The assistant talks to Moonshot (Kimi) by default through langchain's
ChatOpenAI; ``llm_base_url`` points it at any compatible endpoint.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import openai
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.runnables import Runnable
from langchain_core.tools import BaseTool
from langchain_openai import ChatOpenAI

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode, ServiceError

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class LLMError(ServiceError):
    """Base exception for LLM errors."""
    error_code = ErrorCode.LLM_ERROR


class LLMUnavailableError(LLMError):
    """Raised when the LLM provider times out or cannot be reached."""
    error_code = ErrorCode.LLM_UNAVAILABLE


# =============================================================================
# Model Factory
# =============================================================================


def create_chat_model(
    tools: Optional[Sequence[BaseTool]] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    model: Optional[str] = None,
) -> Runnable:
    """Create the chat model, bound to ``tools`` when given.

    Raises:
        LLMError: If no API key is configured
    """
    key = api_key or settings.llm_api_key
    if not key:
        raise LLMError("LLM API key not configured. Set LLM_API_KEY.")

    llm: BaseChatModel = ChatOpenAI(
        api_key=key,
        base_url=base_url or settings.llm_base_url,
        model=model or settings.llm_model,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout,
        max_retries=1,
    )
    logger.info(f"Creating LLM: model={model or settings.llm_model}, num_tools={len(tools) if tools else 0}")

    if tools:
        return llm.bind_tools(list(tools))
    return llm


async def invoke_chat_model(llm: Runnable, messages: List[BaseMessage]) -> AIMessage:
    """Run one completion, translating provider failures into LLMError.

    Raises:
        LLMUnavailableError: Timeout or connection failure
        LLMError: Provider rejected the request
    """
    try:
        response = await llm.ainvoke(messages)
    except openai.APITimeoutError as e:
        raise LLMUnavailableError(f"LLM request timed out: {e}") from e
    except openai.APIConnectionError as e:
        raise LLMUnavailableError(f"Cannot reach LLM provider: {e}") from e
    except openai.RateLimitError as e:
        raise LLMUnavailableError(f"LLM provider rate limited: {e}") from e
    except openai.APIStatusError as e:
        raise LLMError(f"LLM provider error ({e.status_code}): {e.message}") from e

    if not isinstance(response, AIMessage):
        raise LLMError(f"Unexpected LLM response type: {type(response).__name__}")
    return response


def llm_status() -> Dict[str, Any]:
    """Configuration summary for health checks."""
    return {
        "configured": bool(settings.llm_api_key),
        "model": settings.llm_model,
        "base_url": settings.llm_base_url,
    }
