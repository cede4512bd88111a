"""Conversation clients, context assembly, and stream aggregation."""

from .cancellation import CancellationSignal, PendingResponse
from .client import ChatModelClient, ClientSettings, CompletionModelClient, create_client
from .continuation import ContinuationHelper, detect_truncation
from .memory import CallbackMessageStore, LRUMessageStore
from .models import Message, ResponseSnapshot
from .tokenizer import ApproxByteCounter, TiktokenCounter, TokenCounterRegistry

__all__ = [
    "ApproxByteCounter",
    "CallbackMessageStore",
    "CancellationSignal",
    "ChatModelClient",
    "ClientSettings",
    "CompletionModelClient",
    "ContinuationHelper",
    "LRUMessageStore",
    "Message",
    "PendingResponse",
    "ResponseSnapshot",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "create_client",
    "detect_truncation",
]
