"""Shared typing contracts for the conversation core."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol, Sequence, Union

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .models import Message, ResponseSnapshot


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def encode(self, text: str) -> Sequence[int]:
        """Return the token ids for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class MessageStoreProtocol(Protocol):
    """Async key-value mapping of message id to :class:`Message`."""

    async def get(self, message_id: str) -> Message | None:
        ...

    async def set(self, message: Message) -> bool:
        ...

    async def clear(self) -> None:
        ...


ProgressCallback = Callable[["ResponseSnapshot"], Union[None, Awaitable[None]]]
GetMessageById = Callable[[str], Awaitable["Message | None"]]
UpsertMessage = Callable[["Message"], Awaitable[object]]


class AggregatorState(str, Enum):
    """State machine for a single streamed or buffered completion."""

    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    BUFFERING_FULL = "buffering_full"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (AggregatorState.DONE, AggregatorState.FAILED)


class ModelFamily(str, Enum):
    """Endpoint/prompt family a model name maps onto."""

    CHAT = "chat"
    LEGACY_CHAT = "legacy_chat"
    CODEX = "codex"
    TEXT = "text"

    @property
    def uses_chat_endpoint(self) -> bool:
        return self is ModelFamily.CHAT


__all__ = [
    "AggregatorState",
    "GetMessageById",
    "MessageStoreProtocol",
    "ModelFamily",
    "ProgressCallback",
    "TokenCounterProtocol",
    "UpsertMessage",
]
