# tests/conftest.py

import asyncio
import inspect
import json
import re
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional
from unittest.mock import AsyncMock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from sqlalchemy.ext.asyncio import create_async_engine

from kubeconsole.backends.infra_client import InfraClient
from kubeconsole.backends.kubectl_mcp import KubectlMcpRunner
from kubeconsole.backends.session_store import SessionStore


# ──────────────────────────────────────────────────────────────────────────────
# Scripted chat model
# ──────────────────────────────────────────────────────────────────────────────

class FakeChatModel:
    """
    Stand-in for a tool-calling chat model.

    Replies are served in order from `replies` (or computed by `responder`),
    for both `ainvoke` and `astream`; `astream` splits the text into word
    chunks and sends tool calls as a final chunk. Every prompt is recorded
    in `calls`.
    """

    def __init__(
        self,
        replies: Optional[List[AIMessage]] = None,
        responder: Optional[Callable[[List[BaseMessage]], AIMessage]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.replies = list(replies or [])
        self.responder = responder
        self.delay = delay
        self.error = error
        self.calls: List[List[BaseMessage]] = []
        self.bound: List[Any] = []

    def bind_tools(self, tools, **kwargs):
        self.bound.append(([t.name for t in tools], kwargs))
        return self

    async def _next(self, messages) -> AIMessage:
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.responder is not None:
            reply = self.responder(list(messages))
            if inspect.isawaitable(reply):
                reply = await reply
            return reply
        if not self.replies:
            raise AssertionError("FakeChatModel ran out of scripted replies")
        return self.replies.pop(0)

    async def ainvoke(self, messages, config=None, **kwargs) -> AIMessage:
        return await self._next(messages)

    async def astream(self, messages, config=None, **kwargs):
        reply = await self._next(messages)
        text = reply.content if isinstance(reply.content, str) else ""
        for piece in re.findall(r"\S+\s*", text):
            yield AIMessageChunk(content=piece)
        if reply.tool_calls:
            yield AIMessageChunk(
                content="",
                tool_call_chunks=[
                    {
                        "name": call["name"],
                        "args": json.dumps(call["args"]),
                        "id": call.get("id"),
                        "index": idx,
                    }
                    for idx, call in enumerate(reply.tool_calls)
                ],
            )


def route(next_node: str, message: str = "") -> AIMessage:
    return AIMessage(
        content="",
        tool_calls=[{"name": "route", "args": {"next": next_node, "message": message}, "id": "route-call"}],
    )


def call_tool(name: str, call_id: Optional[str] = None, **args: Any) -> AIMessage:
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id or f"call-{name}"}])


def answer(text: str) -> AIMessage:
    return AIMessage(content=text)


# ──────────────────────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────────────────────

class FakeClock:
    """Deterministic clock; each reading moves one second forward."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}")
    yield eng
    await eng.dispose()


@pytest.fixture
async def store(engine, clock) -> SessionStore:
    s = SessionStore(engine, clock=clock)
    await s.initialize()
    return s


# ──────────────────────────────────────────────────────────────────────────────
# Backends
# ──────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def infra() -> AsyncMock:
    mock = AsyncMock(spec=InfraClient)
    mock.list_clusters.return_value = {
        "total": 2,
        "clusters": [
            {"id": 1, "name": "prod-eu", "status": "Running", "region": "eu-west-1", "nodes": [{"name": "n1"}]},
            {"id": 2, "name": "dev", "status": "Running", "region": "us-east-1", "nodes": []},
        ],
    }
    mock.get_cluster.return_value = {"id": 1, "name": "prod-eu", "status": "Running", "nodes": [{"name": "n1"}]}
    mock.list_services.return_value = {
        "total": 1,
        "services": [{"id": 7, "name": "billing", "description": "payments", "cluster_id": 1}],
    }
    return mock


@pytest.fixture
def kubectl() -> AsyncMock:
    mock = AsyncMock(spec=KubectlMcpRunner)
    mock.execute.return_value = {"cluster": "prod-eu", "command": "kubectl get pods", "output": "pod-a Running"}
    return mock
