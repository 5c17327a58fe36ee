"""Error taxonomy with user-facing suggested actions.

Every failure that can reach a user is classified into an ``ErrorCode``.
Service exceptions carry one of these codes; tool executors and the message
router turn them into structured payloads or chat replies with the matching
suggested action.
"""

from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Standardized error codes for the application."""

    # Xero connection and API errors
    XERO_NOT_CONNECTED = "XERO_NOT_CONNECTED"
    XERO_NO_TENANT = "XERO_NO_TENANT"
    XERO_UNAUTHORIZED = "XERO_UNAUTHORIZED"
    XERO_RATE_LIMITED = "XERO_RATE_LIMITED"
    XERO_NOT_FOUND = "XERO_NOT_FOUND"
    XERO_TRANSIENT = "XERO_TRANSIENT"
    XERO_REQUEST_FAILED = "XERO_REQUEST_FAILED"

    # Authorization flow errors
    AUTH_INVALID_STATE = "AUTH_INVALID_STATE"
    AUTH_EXCHANGE_FAILED = "AUTH_EXCHANGE_FAILED"

    # Orchestrator errors
    TOOL_LOOP_EXCEEDED = "TOOL_LOOP_EXCEEDED"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    INVALID_TOOL_ARGUMENTS = "INVALID_TOOL_ARGUMENTS"
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"
    LLM_ERROR = "LLM_ERROR"

    # OCR errors
    OCR_NO_PROVIDER = "OCR_NO_PROVIDER"
    OCR_ALL_PROVIDERS_FAILED = "OCR_ALL_PROVIDERS_FAILED"

    # Chat transport errors
    TRANSPORT_ERROR = "TRANSPORT_ERROR"

    # General errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standardized error response format.

    Attributes:
        error: Short error description
        error_code: Machine-readable error code
        message: Human-readable error message
        details: Additional error details
        retry_after: Seconds to wait before retrying (for rate limits)
        suggested_action: Actionable suggestion for the user
        is_retryable: Whether the operation can be retried
    """
    error: str
    error_code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retry_after: Optional[int] = None
    suggested_action: Optional[str] = None
    is_retryable: bool = False


# Suggested actions shown to chat users (the assistant speaks Chinese)
SUGGESTED_ACTIONS = {
    ErrorCode.XERO_NOT_CONNECTED: "Xero 账户未连接或授权已失效，请点击授权链接重新连接。",
    ErrorCode.XERO_NO_TENANT: "Xero 已授权但没有可用的组织，请在授权时选择一个组织后重试。",
    ErrorCode.XERO_UNAUTHORIZED: "Xero 拒绝了当前授权，请稍后重试；如仍失败请重新授权。",
    ErrorCode.XERO_RATE_LIMITED: "Xero 请求过于频繁，请稍等片刻再试。",
    ErrorCode.XERO_NOT_FOUND: "在 Xero 中没有找到对应的记录。",
    ErrorCode.XERO_TRANSIENT: "Xero 暂时无法访问，请稍后再试。",
    ErrorCode.XERO_REQUEST_FAILED: "Xero 未能处理该请求，请检查输入内容。",

    ErrorCode.AUTH_INVALID_STATE: "授权链接已失效或已被使用，请重新发起授权。",
    ErrorCode.AUTH_EXCHANGE_FAILED: "Xero 授权失败，请重新发起授权。",

    ErrorCode.TOOL_LOOP_EXCEEDED: "这个问题需要的步骤太多了，请把问题拆分得更具体一些。",
    ErrorCode.TOOL_NOT_FOUND: "请求的功能暂不支持。",
    ErrorCode.INVALID_TOOL_ARGUMENTS: "参数不完整或格式不正确，请补充信息。",
    ErrorCode.LLM_UNAVAILABLE: "AI 服务响应超时，请稍后再试。",
    ErrorCode.LLM_ERROR: "AI 服务暂时出现问题，请稍后再试。",

    ErrorCode.OCR_NO_PROVIDER: "发票识别服务未配置，请联系管理员。",
    ErrorCode.OCR_ALL_PROVIDERS_FAILED: "发票识别失败，请确保图片清晰并重试，或手动输入发票信息。",

    ErrorCode.TRANSPORT_ERROR: "消息发送失败，请稍后重试。",

    ErrorCode.VALIDATION_ERROR: "提交的数据无效，请检查后重试。",
    ErrorCode.INTERNAL_ERROR: "处理请求时出现了问题，请稍后再试。",
}

# Retryable error codes
RETRYABLE_ERRORS = {
    ErrorCode.XERO_RATE_LIMITED,
    ErrorCode.XERO_TRANSIENT,
    ErrorCode.XERO_UNAUTHORIZED,
    ErrorCode.LLM_UNAVAILABLE,
    ErrorCode.OCR_ALL_PROVIDERS_FAILED,
    ErrorCode.TRANSPORT_ERROR,
    ErrorCode.INTERNAL_ERROR,
}


def create_error_response(
    error_code: ErrorCode,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    retry_after: Optional[int] = None,
) -> ErrorResponse:
    """Create a standardized error response.

    Args:
        error_code: The error code
        message: Optional custom message (uses default if not provided)
        details: Optional additional details
        retry_after: Optional retry delay in seconds

    Returns:
        ErrorResponse with suggested action
    """
    suggested_action = SUGGESTED_ACTIONS.get(error_code)
    is_retryable = error_code in RETRYABLE_ERRORS

    return ErrorResponse(
        error=error_code.value,
        error_code=error_code.value,
        message=message or suggested_action or "An error occurred",
        details=details,
        retry_after=retry_after,
        suggested_action=suggested_action,
        is_retryable=is_retryable,
    )


class ServiceError(Exception):
    """Root of the service exception hierarchies.

    Subclasses pin a class-level ``error_code``; a specific instance may
    override it.
    """

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code

    @property
    def suggested_action(self) -> Optional[str]:
        return SUGGESTED_ACTIONS.get(self.error_code)

    @property
    def is_retryable(self) -> bool:
        return self.error_code in RETRYABLE_ERRORS


class AppException(HTTPException):
    """HTTP exception carrying a standardized error response."""

    def __init__(
        self,
        error_code: ErrorCode,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ):
        self.error_code = error_code
        self.error_response = create_error_response(
            error_code=error_code,
            message=message,
            details=details,
            retry_after=retry_after,
        )

        super().__init__(
            status_code=status_code,
            detail=self.error_response.model_dump(),
        )


class ValidationError(AppException):
    """Malformed inbound request (bad webhook body, missing parameters)."""

    def __init__(
        self,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            error_code=error_code,
            status_code=status.HTTP_400_BAD_REQUEST,
            message=message,
            details=details,
        )


class ForbiddenError(AppException):
    """Inbound request failed token or signature verification."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=status.HTTP_403_FORBIDDEN,
            message=message or "Request verification failed",
        )
