"""Xero accounting API gateway and operations.

This module provides:
- Records parsed from Xero responses at the boundary (invoices, contacts,
  accounts, organisation)
- XeroGateway, a pure executor/classifier: bearer token + tenant header,
  non-2xx responses raised as typed XeroError subclasses, no retries
- XeroService, the accounting operations exposed to the assistant's tools
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode
from bizmate.models.base import utc_now
from bizmate.services import reports
from bizmate.services.xero_auth import (
    TokenManager,
    XeroError,
    XeroNoTenantError,
    XeroNotFoundError,
    XeroRateLimitError,
    XeroTransientError,
    XeroUnauthorizedError,
)

logger = logging.getLogger(__name__)

_MS_DATE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")

INVOICE_STATUSES = ("DRAFT", "SUBMITTED", "AUTHORISED", "PAID", "VOIDED")


def parse_xero_date(value: Any) -> Optional[date]:
    """Parse Xero's ``/Date(1518685950940+0000)/`` or ISO date strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    match = _MS_DATE.match(text)
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc).date()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        logger.warning(f"Unparseable Xero date: {text}")
        return None


# =============================================================================
# Data Models
# =============================================================================


class _XeroRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class XeroContact(_XeroRecord):
    """Xero contact (customer or supplier)."""
    contact_id: Optional[str] = Field(None, alias="ContactID")
    name: str = Field("Unknown", alias="Name")
    email: Optional[str] = Field(None, alias="EmailAddress")
    phones: List[Dict[str, Any]] = Field(default_factory=list, alias="Phones")
    addresses: List[Dict[str, Any]] = Field(default_factory=list, alias="Addresses")
    balances: Dict[str, Any] = Field(default_factory=dict, alias="Balances")
    is_customer: Optional[bool] = Field(None, alias="IsCustomer")
    is_supplier: Optional[bool] = Field(None, alias="IsSupplier")

    @property
    def outstanding(self) -> float:
        receivable = self.balances.get("AccountsReceivable") or {}
        return float(receivable.get("Outstanding") or 0)

    def to_summary(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phones[0].get("PhoneNumber") if self.phones else None,
            "address": self.addresses[0].get("AddressLine1") if self.addresses else None,
            "balance": self.outstanding,
            "is_customer": self.is_customer is not False,
            "is_supplier": self.is_supplier is True,
        }


class XeroInvoice(_XeroRecord):
    """Xero invoice (ACCREC sales invoice or ACCPAY bill)."""
    invoice_id: Optional[str] = Field(None, alias="InvoiceID")
    invoice_number: Optional[str] = Field(None, alias="InvoiceNumber")
    type: Optional[str] = Field(None, alias="Type")
    status: Optional[str] = Field(None, alias="Status")
    invoice_date: Optional[date] = Field(None, alias="Date")
    due_date: Optional[date] = Field(None, alias="DueDate")
    sub_total: float = Field(0.0, alias="SubTotal")
    total_tax: float = Field(0.0, alias="TotalTax")
    total: float = Field(0.0, alias="Total")
    amount_due: float = Field(0.0, alias="AmountDue")
    amount_paid: float = Field(0.0, alias="AmountPaid")
    reference: Optional[str] = Field(None, alias="Reference")
    contact: Optional[XeroContact] = Field(None, alias="Contact")

    @field_validator("invoice_date", "due_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Optional[date]:
        return parse_xero_date(value)

    @field_validator("sub_total", "total_tax", "total", "amount_due", "amount_paid", mode="before")
    @classmethod
    def _none_as_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @property
    def customer_name(self) -> str:
        return self.contact.name if self.contact else "Unknown"

    def to_summary(self, include_customer: bool = True) -> Dict[str, Any]:
        summary = {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "type": self.type,
            "status": self.status,
            "date": self.invoice_date.isoformat() if self.invoice_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "total": self.total,
            "amount_due": self.amount_due,
            "amount_paid": self.amount_paid,
            "reference": self.reference,
        }
        if include_customer:
            summary["customer"] = self.customer_name
        return summary


class XeroAccount(_XeroRecord):
    """Xero chart-of-accounts entry."""
    account_id: Optional[str] = Field(None, alias="AccountID")
    code: Optional[str] = Field(None, alias="Code")
    name: str = Field("", alias="Name")
    type: Optional[str] = Field(None, alias="Type")
    status: Optional[str] = Field(None, alias="Status")
    balance: float = Field(0.0, alias="Balance")

    @field_validator("balance", mode="before")
    @classmethod
    def _none_as_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value


class XeroOrganisation(_XeroRecord):
    """The connected Xero organisation."""
    name: Optional[str] = Field(None, alias="Name")
    country_code: str = Field("AU", alias="CountryCode")
    base_currency: Optional[str] = Field(None, alias="BaseCurrency")
    financial_year_end_day: Optional[int] = Field(None, alias="FinancialYearEndDay")
    financial_year_end_month: Optional[int] = Field(None, alias="FinancialYearEndMonth")


class InvoiceDraft(BaseModel):
    """Input for creating a draft sales invoice."""
    customer_name: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    description: str = "Service"
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    reference: Optional[str] = None
    account_code: str = "200"


class InvoicePdf(BaseModel):
    """Downloaded invoice PDF plus its online link, if Xero offers one."""
    invoice_id: str
    content: bytes
    online_url: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


# =============================================================================
# Gateway
# =============================================================================


class XeroGateway:
    """Executes authenticated calls against the Xero accounting API.

    Every call resolves a valid token through the TokenManager, requires a
    resolved tenant, and classifies non-2xx responses:

    - 401/403 -> XeroUnauthorizedError (credential marked stale, so the
      next call refreshes once)
    - 404 -> XeroNotFoundError
    - 429 -> XeroRateLimitError with Retry-After
    - 5xx, timeouts, transport errors -> XeroTransientError
    - anything else -> XeroError carrying Xero's message

    No retries happen here; retry policy belongs to the caller.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_manager = token_manager
        self.base_url = (base_url or settings.xero_api_base).rstrip("/")
        self.timeout = timeout or settings.xero_request_timeout

        # HTTP client will be created lazily unless injected
        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "XeroGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if not isinstance(body, dict):
            return str(body)

        validation = [
            err.get("Message")
            for element in body.get("Elements") or []
            for err in element.get("ValidationErrors") or []
            if err.get("Message")
        ]
        if validation:
            return "; ".join(validation)
        return str(
            body.get("Message")
            or body.get("Detail")
            or body.get("detail")
            or body.get("Title")
            or f"HTTP {response.status_code}"
        )

    async def _handle_response_error(self, user_id: str, response: httpx.Response) -> None:
        """Raise the classified XeroError for a non-2xx response."""
        if response.is_success:
            return

        status = response.status_code
        message = self._error_message(response)

        if status in (401, 403):
            logger.warning(f"Xero rejected token for {user_id} (HTTP {status}), marking stale")
            await self.token_manager.mark_stale(user_id)
            raise XeroUnauthorizedError(f"Xero rejected the authorization: {message}")
        elif status == 404:
            raise XeroNotFoundError(f"Resource not found: {message}")
        elif status == 429:
            retry_after = response.headers.get("Retry-After")
            raise XeroRateLimitError(
                f"Rate limited: {message}",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        elif status >= 500:
            raise XeroTransientError(f"Xero server error ({status}): {message}")
        else:
            raise XeroError(f"Xero API error ({status}): {message}")

    async def call(
        self,
        user_id: str,
        endpoint: str,
        method: str = "GET",
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        accept: str = "application/json",
    ) -> Any:
        """Execute one Xero API call for a user.

        Args:
            user_id: Owner of the credential to use
            endpoint: Path below the API base, e.g. "/Invoices"
            method: HTTP method
            params: Query parameters
            body: JSON body for POST/PUT
            accept: Response media type; non-JSON types return raw bytes

        Returns:
            Parsed JSON body, or bytes when ``accept`` is not JSON

        Raises:
            XeroNotConnectedError: No usable credential
            XeroNoTenantError: Credential has no resolved tenant
            XeroError: Classified API failure
        """
        credential = await self.token_manager.get_valid_credential(user_id)
        if not credential.tenant_id:
            raise XeroNoTenantError(f"No Xero organisation resolved for {user_id}")

        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Xero-tenant-id": credential.tenant_id,
            "Accept": accept,
        }
        client = await self._get_client()
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        logger.debug(f"Xero {method} {endpoint} for {user_id}")
        try:
            response = await client.request(
                method,
                url,
                params=params,
                json=body if method in ("POST", "PUT") else None,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise XeroTransientError(f"Xero request timed out: {e}") from e
        except httpx.TransportError as e:
            raise XeroTransientError(f"Cannot reach Xero: {e}") from e

        await self._handle_response_error(user_id, response)

        if accept != "application/json":
            return response.content
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise XeroError(f"Malformed Xero response: {e}") from e


# =============================================================================
# Accounting Operations
# =============================================================================


class XeroService:
    """Accounting operations used by the assistant's tools."""

    UNPAID_RECEIVABLES = 'Type=="ACCREC" AND Status!="PAID"'

    def __init__(
        self,
        gateway: XeroGateway,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self._clock = clock

    def _today(self) -> date:
        return self._clock().date()

    # =========================================================================
    # Reference Data
    # =========================================================================

    async def get_organisation(self, user_id: str) -> XeroOrganisation:
        data = await self.gateway.call(user_id, "/Organisation")
        organisations = data.get("Organisations") or []
        if not organisations:
            return XeroOrganisation()
        return XeroOrganisation.model_validate(organisations[0])

    async def get_invoices(
        self,
        user_id: str,
        where: Optional[str] = None,
        page: Optional[int] = None,
    ) -> List[XeroInvoice]:
        """Fetch invoices, optionally filtered with a Xero ``where`` clause."""
        params: Dict[str, Any] = {}
        if where:
            params["where"] = where
        if page is not None:
            params["page"] = page
        data = await self.gateway.call(user_id, "/Invoices", params=params or None)
        return [XeroInvoice.model_validate(item) for item in data.get("Invoices") or []]

    async def get_bank_accounts(self, user_id: str) -> List[XeroAccount]:
        data = await self.gateway.call(
            user_id,
            "/Accounts",
            params={"where": 'Type=="BANK" AND Status=="ACTIVE"'},
        )
        return [XeroAccount.model_validate(item) for item in data.get("Accounts") or []]

    # =========================================================================
    # Receivables and Listings
    # =========================================================================

    async def get_receivables_summary(self, user_id: str) -> Dict[str, Any]:
        """Outstanding receivables, totalled overall and per customer."""
        invoices = await self.get_invoices(user_id, where=self.UNPAID_RECEIVABLES)
        return reports.summarize_receivables(invoices)

    async def get_all_invoices(
        self,
        user_id: str,
        status: Optional[str] = None,
        page: int = 1,
    ) -> Dict[str, Any]:
        where = None
        if status:
            status = status.strip().upper()
            if status not in INVOICE_STATUSES:
                raise ValueError(f"Unknown invoice status: {status}")
            where = f'Status=="{status}"'
        invoices = await self.get_invoices(user_id, where=where, page=page)
        simplified = [invoice.to_summary() for invoice in invoices]
        return {"invoices": simplified, "count": len(simplified), "page": page}

    async def get_all_customers(self, user_id: str, page: int = 1) -> Dict[str, Any]:
        data = await self.gateway.call(user_id, "/Contacts", params={"page": page})
        contacts = [XeroContact.model_validate(item) for item in data.get("Contacts") or []]
        customers = [contact.to_summary() for contact in contacts]
        return {"customers": customers, "count": len(customers), "page": page}

    async def get_customer_invoices(self, user_id: str, customer_name: str) -> Dict[str, Any]:
        """Invoices whose contact name contains ``customer_name`` (case-insensitive)."""
        needle = customer_name.strip().lower()
        invoices = await self.get_invoices(user_id)
        matched = [
            invoice.to_summary(include_customer=False)
            for invoice in invoices
            if needle in invoice.customer_name.lower()
        ]
        return {"customer": customer_name, "invoices": matched, "count": len(matched)}

    # =========================================================================
    # Invoice Creation and Retrieval
    # =========================================================================

    async def create_invoice(self, user_id: str, draft: InvoiceDraft) -> XeroInvoice:
        """Create a DRAFT sales invoice with a single line item."""
        issue_date = draft.invoice_date or self._today()
        due_date = draft.due_date or issue_date + timedelta(days=30)

        invoice: Dict[str, Any] = {
            "Type": "ACCREC",
            "Contact": {"Name": draft.customer_name},
            "Date": issue_date.isoformat(),
            "DueDate": due_date.isoformat(),
            "LineItems": [{
                "Description": draft.description,
                "Quantity": 1,
                "UnitAmount": draft.amount,
                "AccountCode": draft.account_code,
            }],
            "Status": "DRAFT",
        }
        if draft.reference:
            invoice["Reference"] = draft.reference

        data = await self.gateway.call(
            user_id, "/Invoices", method="PUT", body={"Invoices": [invoice]}
        )
        created = data.get("Invoices") or []
        if not created:
            raise XeroError("Xero did not return the created invoice")

        result = XeroInvoice.model_validate(created[0])
        logger.info(f"Created Xero invoice {result.invoice_id} for {user_id}")
        return result

    async def get_online_invoice_url(self, user_id: str, invoice_id: str) -> Optional[str]:
        data = await self.gateway.call(user_id, f"/Invoices/{invoice_id}/OnlineInvoice")
        online = data.get("OnlineInvoices") or []
        return online[0].get("OnlineInvoiceUrl") if online else None

    async def get_invoice_pdf(self, user_id: str, invoice_id: str) -> InvoicePdf:
        """Download an invoice as PDF, with its online link when available."""
        content = await self.gateway.call(
            user_id, f"/Invoices/{invoice_id}", accept="application/pdf"
        )
        try:
            online_url = await self.get_online_invoice_url(user_id, invoice_id)
        except XeroError as e:
            # Draft invoices have no online version
            if e.error_code not in (
                ErrorCode.XERO_NOT_FOUND,
                ErrorCode.XERO_REQUEST_FAILED,
                ErrorCode.XERO_TRANSIENT,
            ):
                raise
            logger.info(f"No online invoice link for {invoice_id}: {e.message}")
            online_url = None
        return InvoicePdf(invoice_id=invoice_id, content=content, online_url=online_url)

    # =========================================================================
    # Reports
    # =========================================================================

    async def get_bas_report(self, user_id: str) -> Dict[str, Any]:
        """BAS (AU) / GST return (NZ) figures for the current quarter."""
        organisation = await self.get_organisation(user_id)
        today = self._today()
        period = reports.current_quarter(today)

        window = (
            f"Date >= DateTime({period.start.year}, {period.start.month:02d}, {period.start.day:02d})"
            f" AND Date <= DateTime({period.end.year}, {period.end.month:02d}, {period.end.day:02d})"
        )
        sales = await self.get_invoices(user_id, where=f'{window} AND Type=="ACCREC"', page=1)
        purchases = await self.get_invoices(user_id, where=f'{window} AND Type=="ACCPAY"', page=1)

        return reports.build_bas_report(organisation, sales, purchases, period, today)

    async def get_cashflow_forecast(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        """Project the bank balance forward over ``days`` using unpaid invoices."""
        receivables = await self.get_invoices(
            user_id, where='Type=="ACCREC" AND Status!="PAID" AND Status!="VOIDED"', page=1
        )
        payables = await self.get_invoices(
            user_id, where='Type=="ACCPAY" AND Status!="PAID" AND Status!="VOIDED"', page=1
        )
        bank_accounts = await self.get_bank_accounts(user_id)

        return reports.build_cashflow_forecast(
            receivables, payables, bank_accounts, days, self._today()
        )
