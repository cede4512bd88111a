"""Message store implementations used to resolve parent-linked turns."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import RLock
from typing import Awaitable, Callable

from ..ai_types import GetMessageById, MessageStoreProtocol, UpsertMessage
from ..models import Message

LOGGER = logging.getLogger(__name__)
DEFAULT_MAX_ENTRIES = 10_000


@dataclass(slots=True)
class _StoreEntry:
    message: Message
    stored_at: float


class LRUMessageStore(MessageStoreProtocol):
    """Bounded in-memory store evicting the least recently used message.

    Reads refresh recency. Eviction is silent: a context walk that reaches an
    evicted ancestor treats it as the end of the chain.
    """

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES, ttl_seconds: float | None = None) -> None:
        self._max_entries = max(1, int(max_entries))
        self._ttl_seconds = None if ttl_seconds is None else max(0.0, float(ttl_seconds))
        self._entries: "OrderedDict[str, _StoreEntry]" = OrderedDict()
        self._lock = RLock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            return message_id in self._entries

    async def get(self, message_id: str) -> Message | None:
        if not message_id:
            return None
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(message_id)
            if entry is None:
                return None
            if self._ttl_seconds and now - entry.stored_at >= self._ttl_seconds:
                self._entries.pop(message_id, None)
                LOGGER.debug("Message %s expired from store", message_id)
                return None
            self._entries.move_to_end(message_id)
            return entry.message

    async def set(self, message: Message) -> bool:
        if not message.id:
            raise ValueError("Messages require an id before they can be stored")
        with self._lock:
            self._entries[message.id] = _StoreEntry(message=message, stored_at=time.monotonic())
            self._entries.move_to_end(message.id)
            self._enforce_capacity_locked()
        return True

    async def delete(self, message_id: str) -> bool:
        with self._lock:
            return self._entries.pop(message_id, None) is not None

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _enforce_capacity_locked(self) -> None:
        while len(self._entries) > self._max_entries:
            evicted, _entry = self._entries.popitem(last=False)
            LOGGER.debug("Evicted message %s from store", evicted)


class CallbackMessageStore(MessageStoreProtocol):
    """Adapts collaborator-supplied lookup/upsert coroutines to the store protocol."""

    def __init__(
        self,
        get_message_by_id: GetMessageById,
        upsert_message: UpsertMessage,
        *,
        clear_messages: Callable[[], Awaitable[object]] | None = None,
    ) -> None:
        self._get = get_message_by_id
        self._upsert = upsert_message
        self._clear = clear_messages

    async def get(self, message_id: str) -> Message | None:
        if not message_id:
            return None
        return await self._get(message_id)

    async def set(self, message: Message) -> bool:
        result = await self._upsert(message)
        return result is not False

    async def clear(self) -> None:
        if self._clear is None:
            raise NotImplementedError("This message store does not support clearing")
        await self._clear()


__all__ = ["CallbackMessageStore", "DEFAULT_MAX_ENTRIES", "LRUMessageStore"]
