"""Message stores backing parent-linked conversation history."""

from .message_store import CallbackMessageStore, LRUMessageStore

__all__ = ["CallbackMessageStore", "LRUMessageStore"]
