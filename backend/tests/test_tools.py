"""Tests for the accounting tools and the tool registry."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from bizmate.core.errors import ErrorCode
from bizmate.services.credentials import CredentialStore
from bizmate.services.tools import ToolRegistry, create_xero_tools, xero_error_payload
from bizmate.services.xero import XeroGateway, XeroService
from bizmate.services.xero_auth import (
    TokenManager,
    XeroNotConnectedError,
    XeroNotFoundError,
    XeroRateLimitError,
)

from conftest import START, FakeXeroAPI

USER = "feishu:ou_1"
AUTH_URL = "https://bizmate.test/auth?user_id=feishu%3Aou_1"

EXPECTED_TOOLS = [
    "get_receivables_summary",
    "get_customer_invoices",
    "get_all_invoices",
    "get_all_customers",
    "create_invoice",
    "get_bas_report",
    "get_cashflow_forecast",
    "get_invoice_pdf",
]


def service_for(db_session, api: FakeXeroAPI, clock) -> XeroService:
    manager = TokenManager(CredentialStore(db_session), AsyncMock(), 300, clock)
    return XeroService(XeroGateway(manager, http_client=api.client()), clock=clock)


class TestToolRegistry:
    def test_tools_registered_in_order(self, db_session, clock):
        registry = ToolRegistry(create_xero_tools(service_for(db_session, FakeXeroAPI(), clock), USER))

        assert registry.names == EXPECTED_TOOLS
        assert len(registry.names) == 8
        assert "create_invoice" in registry
        assert registry.get("missing") is None

    def test_duplicate_names_rejected(self, db_session, clock):
        tools = create_xero_tools(service_for(db_session, FakeXeroAPI(), clock), USER)
        with pytest.raises(ValueError):
            ToolRegistry(tools + tools[:1])

    def test_tool_descriptions_are_present(self, db_session, clock):
        for item in create_xero_tools(service_for(db_session, FakeXeroAPI(), clock), USER):
            assert item.description


class TestErrorPayload:
    def test_reauthorize_errors_carry_link(self):
        payload = xero_error_payload(XeroNotConnectedError("no credential"), AUTH_URL)
        assert payload["error"] == ErrorCode.XERO_NOT_CONNECTED.value
        assert payload["auth_url"] == AUTH_URL
        assert payload["action_required"]

    def test_other_errors_have_no_link(self):
        payload = xero_error_payload(XeroNotFoundError("gone"), AUTH_URL)
        assert "auth_url" not in payload
        assert payload["message"] == "gone"

    def test_rate_limit_includes_retry_after(self):
        payload = xero_error_payload(XeroRateLimitError("slow down", retry_after=30))
        assert payload["retry_after"] == 30


class TestToolExecution:
    async def test_not_connected_returns_payload_instead_of_raising(self, db_session, clock):
        tools = create_xero_tools(service_for(db_session, FakeXeroAPI(), clock), USER, auth_url=AUTH_URL)
        registry = ToolRegistry(tools)

        result = await registry.get("get_receivables_summary").ainvoke({})

        assert result["error"] == ErrorCode.XERO_NOT_CONNECTED.value
        assert result["auth_url"] == AUTH_URL

    async def test_create_invoice_tool(self, db_session, clock):
        await CredentialStore(db_session).upsert(
            USER, "access", "refresh", START + timedelta(hours=1), "tenant-1", "Acme"
        )
        api = FakeXeroAPI({("PUT", "/Invoices"): {"Invoices": [{
            "InvoiceID": "inv-7", "Total": 88.0, "Contact": {"Name": "Acme"},
        }]}})
        registry = ToolRegistry(create_xero_tools(service_for(db_session, api, clock), USER))

        result = await registry.get("create_invoice").ainvoke({"customer_name": "Acme", "amount": 88})

        assert result["success"] is True
        assert result["invoice"]["invoice_id"] == "inv-7"
        assert result["invoice"]["customer"] == "Acme"

    async def test_invoice_status_filter_is_normalised(self, db_session, clock):
        await CredentialStore(db_session).upsert(
            USER, "access", "refresh", START + timedelta(hours=1), "tenant-1", "Acme"
        )
        api = FakeXeroAPI({("GET", "/Invoices"): {"Invoices": []}})
        registry = ToolRegistry(create_xero_tools(service_for(db_session, api, clock), USER))

        result = await registry.get("get_all_invoices").ainvoke({"status": "paid"})

        assert result == {"invoices": [], "count": 0, "page": 1}
        assert api.requests[0].url.params["where"] == 'Status=="PAID"'

    async def test_unknown_invoice_status_rejected(self, db_session, clock):
        api = FakeXeroAPI()
        registry = ToolRegistry(create_xero_tools(service_for(db_session, api, clock), USER))

        with pytest.raises(ValidationError):
            await registry.get("get_all_invoices").ainvoke({"status": 'PAID" OR Type=="ACCPAY'})
        assert api.requests == []

    async def test_service_rejects_unknown_status(self, db_session, clock):
        service = service_for(db_session, FakeXeroAPI(), clock)

        with pytest.raises(ValueError):
            await service.get_all_invoices(USER, status='PAID" OR 1==1')
