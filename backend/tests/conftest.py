"""Pytest configuration and fixtures for tests.

Provides database fixtures using an in-memory SQLite database, a
controllable clock, and fakes for the chat model and the Xero HTTP API.
"""

import base64
import hashlib
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

# Set test environment variables BEFORE any bizmate imports
# This must happen at the top of conftest.py before any other imports
from cryptography.fernet import Fernet
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["PUBLIC_BASE_URL"] = "https://bizmate.test"

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from langchain_core.messages import AIMessage, BaseMessage
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from bizmate.models.base import BaseModel


# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

START = datetime(2024, 5, 15, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedChatModel:
    """Chat model double returning queued responses in order.

    Once the script runs out the last response repeats. Every message list
    it receives is recorded in ``calls``.
    """

    def __init__(self, responses: List[AIMessage]):
        self.responses = list(responses)
        self.calls: List[List[BaseMessage]] = []
        self.bound_tools: List[Any] = []

    async def ainvoke(self, messages: List[BaseMessage]) -> AIMessage:
        self.calls.append(list(messages))
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]

    def factory(self, tools) -> "ScriptedChatModel":
        self.bound_tools = list(tools)
        return self


def tool_call(name: str, args: Optional[Dict[str, Any]] = None, call_id: str = "call_1") -> AIMessage:
    return AIMessage(
        content="",
        tool_calls=[{"name": name, "args": args or {}, "id": call_id}],
    )


class FakeXeroAPI:
    """Routes for an httpx.MockTransport standing in for api.xero.com.

    ``routes`` maps (method, path) to a JSON body or an httpx.Response.
    Requests are recorded in ``requests``.
    """

    def __init__(self, routes: Optional[Dict[tuple, Any]] = None):
        self.routes: Dict[tuple, Any] = routes or {}
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/api.xro/2.0", "")
        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={"Message": f"No route for {request.method} {path}"})
        if isinstance(route, httpx.Response):
            return route
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def encrypt(payload: dict, key: str) -> str:
    """Encrypt a webhook payload the way Feishu does for an encrypt key."""
    aes_key = hashlib.sha256(key.encode("utf-8")).digest()
    iv = os.urandom(16)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
    return base64.b64encode(iv + encryptor.update(padded) + encryptor.finalize()).decode()


def message_payload(message_type="text", content='{"text":"你好"}', open_id="ou_1"):
    return {
        "schema": "2.0",
        "header": {"event_id": "ev_1", "event_type": "im.message.receive_v1", "token": "tok"},
        "event": {
            "sender": {"sender_id": {"open_id": open_id}},
            "message": {
                "message_id": "om_1",
                "chat_id": "oc_1",
                "message_type": message_type,
                "content": content,
            },
        },
    }


@pytest_asyncio.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with in-memory SQLite."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing.

    Each test gets a fresh session with a clean database.
    """
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def session_context(session_maker: async_sessionmaker) -> Callable:
    """Drop-in replacement for get_db_context bound to the test engine."""

    @asynccontextmanager
    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return factory


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture(scope="session", autouse=True)
def cleanup_global_engine():
    """Dispose the global engine's pool once the session ends."""
    yield
    import asyncio
    from bizmate.core.database import engine as global_engine

    asyncio.run(global_engine.dispose())
