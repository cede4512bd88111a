"""Shared pytest fixtures."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from chatweave.ai.ai_types import MessageStoreProtocol
from chatweave.ai.memory.message_store import LRUMessageStore, _StoreEntry
from chatweave.ai.models import Message


def sse_payload(*events: Any) -> bytes:
    """Encode events as a ``text/event-stream`` body; strings are sent verbatim."""

    parts = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        parts.append(f"data: {data}\n\n")
    return "".join(parts).encode("utf-8")


def chat_chunk(content: str | None = None, *, chunk_id: str = "chatcmpl-1", role: str | None = None) -> dict:
    delta: dict[str, Any] = {}
    if role:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    return {"id": chunk_id, "object": "chat.completion.chunk", "choices": [{"index": 0, "delta": delta}]}


def text_chunk(text: str, *, chunk_id: str = "cmpl-1") -> dict:
    return {"id": chunk_id, "object": "text_completion", "choices": [{"index": 0, "text": text}]}


class CountingStore(MessageStoreProtocol):
    """LRU-backed store that records every lookup."""

    def __init__(self, messages: list[Message] | None = None) -> None:
        self._inner = LRUMessageStore()
        self.lookups: list[str] = []
        for message in messages or []:
            self._inner._entries[message.id] = _StoreEntry(message=message, stored_at=0.0)

    async def get(self, message_id: str) -> Message | None:
        self.lookups.append(message_id)
        return await self._inner.get(message_id)

    async def set(self, message: Message) -> bool:
        return await self._inner.set(message)

    async def clear(self) -> None:
        await self._inner.clear()


@pytest.fixture
def conversation() -> list[Message]:
    return [
        Message(id="m1", role="user", text="hello"),
        Message(id="m2", role="assistant", text="hi there", parent_message_id="m1"),
    ]


@pytest.fixture
def counting_store(conversation: list[Message]) -> CountingStore:
    return CountingStore(conversation)


@pytest.fixture
def mock_http() -> Callable[..., httpx.AsyncClient]:
    """Return a factory building an ``AsyncClient`` around a request handler."""

    def _factory(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _factory
