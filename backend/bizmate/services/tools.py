"""LangChain tools exposing the Xero accounting operations to the assistant.

Tools are built per user: each closure is bound to one user id, so the LLM
never chooses whose books it touches. Executors never raise Xero failures;
they return ``{error, message, action_required}`` payloads the model can
explain in natural language.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field, field_validator

from bizmate.core.errors import ErrorCode, SUGGESTED_ACTIONS
from bizmate.services.xero import InvoiceDraft, XeroService
from bizmate.services.xero_auth import XeroError, XeroRateLimitError

logger = logging.getLogger(__name__)

# Failures the user fixes by (re)authorizing
REAUTHORIZE_ERRORS = {
    ErrorCode.XERO_NOT_CONNECTED,
    ErrorCode.XERO_NO_TENANT,
    ErrorCode.XERO_UNAUTHORIZED,
}


def xero_error_payload(error: XeroError, auth_url: Optional[str] = None) -> Dict[str, Any]:
    """Structured, model-readable description of a Xero failure."""
    payload: Dict[str, Any] = {
        "error": error.error_code.value,
        "message": error.message,
        "action_required": SUGGESTED_ACTIONS.get(error.error_code),
    }
    if error.error_code in REAUTHORIZE_ERRORS and auth_url:
        payload["auth_url"] = auth_url
    if isinstance(error, XeroRateLimitError) and error.retry_after:
        payload["retry_after"] = error.retry_after
    return payload


# =============================================================================
# Argument Schemas
# =============================================================================


class CustomerInvoicesInput(BaseModel):
    customer_name: str = Field(description="客户名称，支持部分匹配")


InvoiceStatus = Literal["DRAFT", "SUBMITTED", "AUTHORISED", "PAID", "VOIDED"]


class AllInvoicesInput(BaseModel):
    status: Optional[InvoiceStatus] = Field(
        default=None,
        description="发票状态过滤：DRAFT, SUBMITTED, AUTHORISED, PAID, VOIDED",
    )
    page: int = Field(default=1, ge=1, description="页码，从 1 开始")

    @field_validator("status", mode="before")
    @classmethod
    def upper_status(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


class AllCustomersInput(BaseModel):
    page: int = Field(default=1, ge=1, description="页码，从 1 开始")


class CreateInvoiceInput(BaseModel):
    customer_name: str = Field(min_length=1, description="客户名称")
    amount: float = Field(ge=0, description="金额")
    description: str = Field(default="Service", description="服务描述")


class CashflowForecastInput(BaseModel):
    days: int = Field(default=30, ge=1, le=365, description="预测天数，默认30天")


class InvoicePdfInput(BaseModel):
    invoice_id: str = Field(description="Xero 发票 ID (InvoiceID)")


# =============================================================================
# Tool Factory
# =============================================================================


def create_xero_tools(
    xero_service: XeroService,
    user_id: str,
    auth_url: Optional[str] = None,
) -> List[BaseTool]:
    """Build the accounting tools bound to one user.

    Args:
        xero_service: Accounting operations
        user_id: Owner of the Xero credential the tools act on
        auth_url: Re-authorization link included in connection errors
    """

    async def _run(name: str, operation: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
        try:
            return await operation()
        except XeroError as e:
            logger.warning(f"Tool {name} failed for {user_id}: {e.error_code.value} {e.message}")
            return xero_error_payload(e, auth_url)

    @tool
    async def get_receivables_summary() -> Dict[str, Any]:
        """获取应收账款汇总，显示每个客户的未付金额"""
        return await _run(
            "get_receivables_summary",
            lambda: xero_service.get_receivables_summary(user_id),
        )

    @tool(args_schema=CustomerInvoicesInput)
    async def get_customer_invoices(customer_name: str) -> Dict[str, Any]:
        """查询指定客户的历史发票记录"""
        return await _run(
            "get_customer_invoices",
            lambda: xero_service.get_customer_invoices(user_id, customer_name),
        )

    @tool(args_schema=AllInvoicesInput)
    async def get_all_invoices(status: Optional[InvoiceStatus] = None, page: int = 1) -> Dict[str, Any]:
        """获取所有发票列表，可按状态过滤"""
        return await _run(
            "get_all_invoices",
            lambda: xero_service.get_all_invoices(user_id, status=status, page=page),
        )

    @tool(args_schema=AllCustomersInput)
    async def get_all_customers(page: int = 1) -> Dict[str, Any]:
        """获取所有客户/联系人列表"""
        return await _run(
            "get_all_customers",
            lambda: xero_service.get_all_customers(user_id, page=page),
        )

    @tool(args_schema=CreateInvoiceInput)
    async def create_invoice(
        customer_name: str,
        amount: float,
        description: str = "Service",
    ) -> Dict[str, Any]:
        """为客户创建新发票（草稿状态，30天后到期）"""
        async def operation() -> Dict[str, Any]:
            draft = InvoiceDraft(
                customer_name=customer_name,
                amount=amount,
                description=description,
            )
            invoice = await xero_service.create_invoice(user_id, draft)
            return {"success": True, "invoice": invoice.to_summary()}

        return await _run("create_invoice", operation)

    @tool
    async def get_bas_report() -> Dict[str, Any]:
        """获取 BAS/GST 税务报告，自动识别澳洲或新西兰，用中文解读税务数据、截止日期和优化建议"""
        return await _run(
            "get_bas_report",
            lambda: xero_service.get_bas_report(user_id),
        )

    @tool(args_schema=CashflowForecastInput)
    async def get_cashflow_forecast(days: int = 30) -> Dict[str, Any]:
        """获取现金流预测，分析未来一段时间的资金流入流出情况，预警资金缺口"""
        return await _run(
            "get_cashflow_forecast",
            lambda: xero_service.get_cashflow_forecast(user_id, days=days),
        )

    @tool(args_schema=InvoicePdfInput)
    async def get_invoice_pdf(invoice_id: str) -> Dict[str, Any]:
        """获取发票 PDF 及在线查看链接"""
        async def operation() -> Dict[str, Any]:
            pdf = await xero_service.get_invoice_pdf(user_id, invoice_id)
            return {
                "invoice_id": pdf.invoice_id,
                "size_bytes": pdf.size,
                "online_url": pdf.online_url,
                "available": pdf.size > 0,
            }

        return await _run("get_invoice_pdf", operation)

    return [
        get_receivables_summary,
        get_customer_invoices,
        get_all_invoices,
        get_all_customers,
        create_invoice,
        get_bas_report,
        get_cashflow_forecast,
        get_invoice_pdf,
    ]


class ToolRegistry:
    """Name -> tool lookup for one orchestrator run."""

    def __init__(self, tools: Iterable[BaseTool]):
        self._tools: Dict[str, BaseTool] = {}
        for item in tools:
            if item.name in self._tools:
                raise ValueError(f"Duplicate tool name: {item.name}")
            self._tools[item.name] = item

    @property
    def tools(self) -> List[BaseTool]:
        return list(self._tools.values())

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
