"""Tests for the tool-calling orchestrator.

Includes property-based tests (Hypothesis) for the iteration cap.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings as hyp_settings, strategies as st
from langchain_core.messages import AIMessage, ToolMessage
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bizmate.core.errors import ErrorCode
from bizmate.models.base import BaseModel
from bizmate.models.conversation import ConversationTurn
from bizmate.services.agent import (
    EMPTY_REPLY,
    AgentService,
    ConversationHistory,
    ToolLoopExceededError,
)
from bizmate.services.credentials import CredentialStore
from bizmate.services.xero import XeroGateway, XeroService
from bizmate.services.xero_auth import TokenManager

from conftest import START, FakeXeroAPI, MutableClock, ScriptedChatModel, tool_call

USER = "feishu:ou_1"
AUTH_URL = "https://bizmate.test/auth?user_id=feishu%3Aou_1"


def xero_service(db_session, api: FakeXeroAPI, clock) -> XeroService:
    manager = TokenManager(CredentialStore(db_session), AsyncMock(), 300, clock)
    return XeroService(XeroGateway(manager, http_client=api.client()), clock=clock)


def tool_messages(messages):
    return [message for message in messages if isinstance(message, ToolMessage)]


class TestPlainAnswer:
    async def test_plain_reply_saves_history(self, db_session, clock):
        model = ScriptedChatModel([AIMessage(content="你好！")])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        reply = await agent.process_message(USER, "你好")

        assert reply == "你好！"
        assert len(model.calls) == 1
        assert [tool.name for tool in model.bound_tools][0] == "get_receivables_summary"
        turns = await ConversationHistory(db_session).load(USER)
        assert [(t.role, t.content) for t in turns] == [("user", "你好"), ("assistant", "你好！")]

    async def test_empty_reply_gets_fallback(self, db_session, clock):
        model = ScriptedChatModel([AIMessage(content="   ")])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        assert await agent.process_message(USER, "?") == EMPTY_REPLY

    async def test_history_is_sent_to_model(self, db_session, clock):
        model = ScriptedChatModel([AIMessage(content="好的")])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        await agent.process_message(USER, "第一句")
        await agent.process_message(USER, "第二句")

        contents = [message.content for message in model.calls[1]]
        assert contents[1:] == ["第一句", "好的", "第二句"]


class TestToolLoop:
    async def test_receivables_with_no_invoices(self, db_session, clock):
        await CredentialStore(db_session).upsert(
            USER, "access", "refresh", START + timedelta(hours=1), "tenant-1", "Acme"
        )
        api = FakeXeroAPI({("GET", "/Invoices"): {"Invoices": []}})
        model = ScriptedChatModel([
            tool_call("get_receivables_summary"),
            AIMessage(content="目前没有客户欠款，应收总额为 $0.00。"),
        ])
        agent = AgentService(db_session, xero_service(db_session, api, clock), model.factory)

        reply = await agent.process_message(USER, "谁欠我钱")

        assert "$0.00" in reply
        [result] = tool_messages(model.calls[1])
        assert result.tool_call_id == "call_1"
        assert json.loads(result.content)["total_receivable"] == 0

    async def test_not_connected_reply_includes_auth_link(self, db_session, clock):
        model = ScriptedChatModel([
            tool_call("get_receivables_summary"),
            AIMessage(content="您还没有连接 Xero 账户。"),
        ])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        reply = await agent.process_message(USER, "谁欠我钱")

        assert AUTH_URL in reply
        payload = json.loads(tool_messages(model.calls[1])[0].content)
        assert payload["error"] == ErrorCode.XERO_NOT_CONNECTED.value
        assert payload["auth_url"] == AUTH_URL

    async def test_auth_link_not_duplicated(self, db_session, clock):
        model = ScriptedChatModel([
            tool_call("get_receivables_summary"),
            AIMessage(content=f"请点击授权: {AUTH_URL}"),
        ])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        reply = await agent.process_message(USER, "谁欠我钱")

        assert reply.count(AUTH_URL) == 1

    async def test_unknown_tool_is_reported_to_model(self, db_session, clock):
        model = ScriptedChatModel([tool_call("delete_everything"), AIMessage(content="做不到")])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        assert await agent.process_message(USER, "删光") == "做不到"
        payload = json.loads(tool_messages(model.calls[1])[0].content)
        assert payload["error"] == ErrorCode.TOOL_NOT_FOUND.value

    async def test_invalid_arguments_are_reported_to_model(self, db_session, clock):
        model = ScriptedChatModel([
            tool_call("create_invoice", {"customer_name": "Acme", "amount": -5}),
            AIMessage(content="金额不能为负"),
        ])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        await agent.process_message(USER, "开发票")

        payload = json.loads(tool_messages(model.calls[1])[0].content)
        assert payload["error"] == ErrorCode.INVALID_TOOL_ARGUMENTS.value

    async def test_tool_results_follow_emitted_order(self, db_session, clock):
        response = AIMessage(
            content="",
            tool_calls=[
                {"name": "get_all_customers", "args": {}, "id": "c1"},
                {"name": "no_such_tool", "args": {}, "id": "c2"},
            ],
            invalid_tool_calls=[
                {"name": "get_all_invoices", "args": "{bad", "id": "c0", "error": "bad json"},
            ],
            additional_kwargs={"tool_calls": [
                {"id": "c0", "type": "function", "function": {"name": "get_all_invoices", "arguments": "{bad"}},
                {"id": "c1", "type": "function", "function": {"name": "get_all_customers", "arguments": "{}"}},
                {"id": "c2", "type": "function", "function": {"name": "no_such_tool", "arguments": "{}"}},
            ]},
        )
        model = ScriptedChatModel([response, AIMessage(content="完成")])
        agent = AgentService(db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory)

        await agent.process_message(USER, "都查一下")

        results = tool_messages(model.calls[1])
        assert [message.tool_call_id for message in results] == ["c0", "c1", "c2"]
        assert json.loads(results[0].content)["error"] == ErrorCode.INVALID_TOOL_ARGUMENTS.value
        assert json.loads(results[1].content)["error"] == ErrorCode.XERO_NOT_CONNECTED.value
        assert json.loads(results[2].content)["error"] == ErrorCode.TOOL_NOT_FOUND.value

    async def test_loop_cap_raises(self, db_session, clock):
        model = ScriptedChatModel([tool_call("get_receivables_summary")])
        agent = AgentService(
            db_session, xero_service(db_session, FakeXeroAPI(), clock), model.factory, max_iterations=3
        )

        with pytest.raises(ToolLoopExceededError) as exc_info:
            await agent.process_message(USER, "循环")

        assert exc_info.value.error_code == ErrorCode.TOOL_LOOP_EXCEEDED
        assert len(model.calls) == 3
        assert await ConversationHistory(db_session).load(USER) == []


class TestLoopCapProperty:
    """The model is called at most max_iterations times per message."""

    @given(cap=st.integers(min_value=1, max_value=10), answer_after=st.integers(min_value=0, max_value=12))
    @hyp_settings(max_examples=20, deadline=None)
    def test_model_calls_bounded(self, cap: int, answer_after: int):
        async def run_test():
            engine = create_async_engine(
                "sqlite+aiosqlite:///:memory:",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
            async with engine.begin() as conn:
                await conn.run_sync(BaseModel.metadata.create_all)
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

            try:
                async with session_factory() as db_session:
                    await CredentialStore(db_session).upsert(
                        USER, "access", "refresh", START + timedelta(hours=1), "tenant-1", "Acme"
                    )
                    api = FakeXeroAPI({("GET", "/Invoices"): {"Invoices": []}})
                    responses = [tool_call("get_receivables_summary", call_id=f"c{i}") for i in range(answer_after)]
                    model = ScriptedChatModel(responses + [AIMessage(content="完成")])
                    service = xero_service(db_session, api, MutableClock(START))
                    agent = AgentService(db_session, service, model.factory, max_iterations=cap)

                    if answer_after < cap:
                        assert await agent.process_message(USER, "hi") == "完成"
                        assert len(model.calls) == answer_after + 1
                    else:
                        with pytest.raises(ToolLoopExceededError):
                            await agent.process_message(USER, "hi")
                        assert len(model.calls) == cap
            finally:
                await engine.dispose()

        asyncio.run(run_test())


class TestConversationHistory:
    async def test_prunes_to_limit(self, db_session):
        history = ConversationHistory(db_session, limit=4)
        for index in range(3):
            await history.append_exchange(USER, f"q{index}", f"a{index}")

        turns = await history.load(USER)
        assert [turn.content for turn in turns] == ["q1", "a1", "q2", "a2"]
        count = (await db_session.execute(select(func.count()).select_from(ConversationTurn))).scalar_one()
        assert count == 4

    async def test_pruning_is_per_user(self, db_session):
        history = ConversationHistory(db_session, limit=2)
        await history.append_exchange("feishu:other", "x", "y")
        await history.append_exchange(USER, "q0", "a0")
        await history.append_exchange(USER, "q1", "a1")

        assert [turn.content for turn in await history.load("feishu:other")] == ["x", "y"]
        assert [turn.content for turn in await history.load(USER)] == ["q1", "a1"]

    async def test_clear(self, db_session):
        history = ConversationHistory(db_session)
        await history.append_exchange(USER, "q", "a")
        await history.clear(USER)
        assert await history.load(USER) == []
