"""Context window assembly and streaming response aggregation for chat completions."""

from .ai import (
    ChatModelClient,
    ClientSettings,
    CompletionModelClient,
    ContinuationHelper,
    LRUMessageStore,
    Message,
    create_client,
)
from .ai.errors import (
    ChatWeaveError,
    MalformedResponseError,
    RemoteServiceError,
    RequestCancelledError,
    RequestTimeoutError,
)
from .services.settings import Settings, SettingsStore
from .utils.logging import configure_logging

__version__ = "0.1.0"

__all__ = [
    "ChatModelClient",
    "ChatWeaveError",
    "ClientSettings",
    "CompletionModelClient",
    "ContinuationHelper",
    "LRUMessageStore",
    "MalformedResponseError",
    "Message",
    "RemoteServiceError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "Settings",
    "SettingsStore",
    "configure_logging",
    "create_client",
]
