"""Message, parameter, and in-flight response data models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Literal, Mapping, cast

from openai.types.chat import ChatCompletionMessageParam

LOGGER = logging.getLogger(__name__)

MessageRole = Literal["user", "assistant", "system"]
_ROLES: frozenset[str] = frozenset({"user", "assistant", "system"})

# Computed by the request builder; never accepted through a merge layer.
RESERVED_PARAMETER_KEYS: frozenset[str] = frozenset({"messages", "prompt", "n", "stream"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_stop(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def coerce_role(value: Any, default: MessageRole = "user") -> MessageRole:
    role = str(value or "").strip().lower()
    if role in _ROLES:
        return cast(MessageRole, role)
    return default


@dataclass(slots=True, frozen=True)
class Message:
    """A persisted conversation turn.

    ``parent_message_id`` is a weak link resolved through the message store;
    a link that does not resolve simply ends the chain.
    """

    id: str
    role: MessageRole
    text: str
    parent_message_id: str | None = None
    conversation_id: str | None = None
    name: str | None = None
    detail: Any = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        payload: dict[str, Any] = {"role": self.role, "content": self.text}
        if self.name:
            payload["name"] = self.name
        return cast(ChatCompletionMessageParam, payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "parent_message_id": self.parent_message_id,
            "conversation_id": self.conversation_id,
            "name": self.name,
            "detail": self.detail,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        created_at = payload.get("created_at")
        timestamp = datetime.fromisoformat(created_at) if isinstance(created_at, str) else _utcnow()
        return cls(
            id=str(payload.get("id", "")),
            role=coerce_role(payload.get("role")),
            text=str(payload.get("text", "")),
            parent_message_id=payload.get("parent_message_id"),
            conversation_id=payload.get("conversation_id"),
            name=payload.get("name"),
            detail=payload.get("detail"),
            created_at=timestamp,
        )


@dataclass(slots=True)
class CompletionParameters:
    """Sampling and model options sent alongside the assembled context.

    Unknown keys are kept in ``extra`` and forwarded verbatim so newer
    service options do not need a code change.
    """

    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None
    logit_bias: dict[str, float] | None = None
    user: str | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | CompletionParameters | None) -> CompletionParameters:
        if values is None:
            return cls()
        if isinstance(values, CompletionParameters):
            return cls.from_mapping(values.as_payload())
        known = {item.name for item in fields(cls)} - {"extra"}
        kwargs: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in values.items():
            if key in RESERVED_PARAMETER_KEYS:
                LOGGER.debug("Ignoring reserved completion parameter %r", key)
                continue
            if key == "extra" and isinstance(value, Mapping):
                extra.update(value)
            elif key in known:
                kwargs[key] = _normalize_stop(value) if key == "stop" else value
            else:
                extra[key] = value
        for key in RESERVED_PARAMETER_KEYS:
            extra.pop(key, None)
        return cls(extra=extra, **kwargs)

    @classmethod
    def merged(
        cls, layers: Iterable[Mapping[str, Any] | CompletionParameters | None]
    ) -> CompletionParameters:
        """Merge layers in order; later non-``None`` values win."""

        combined: dict[str, Any] = {}
        for layer in layers:
            params = cls.from_mapping(layer)
            combined.update(params.as_payload())
        return cls.from_mapping(combined)

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for item in fields(self):
            if item.name == "extra":
                continue
            value = getattr(self, item.name)
            if value is not None:
                payload[item.name] = _normalize_stop(value) if item.name == "stop" else value
        for key, value in self.extra.items():
            if value is not None and key not in RESERVED_PARAMETER_KEYS:
                payload.setdefault(key, value)
        return payload


@dataclass(slots=True, frozen=True)
class ResponseSnapshot:
    """Immutable view of an in-flight response handed to progress observers."""

    id: str
    role: MessageRole
    text: str
    delta: str | None
    detail: Any
    parent_message_id: str | None
    conversation_id: str | None = None


@dataclass(slots=True)
class StreamingResponse:
    """Mutable accumulator owned by the aggregator until finalisation."""

    id: str = ""
    role: MessageRole = "assistant"
    text: str = ""
    delta: str | None = None
    detail: Any = None
    parent_message_id: str | None = None
    conversation_id: str | None = None
    finalized: bool = False

    def snapshot(self) -> ResponseSnapshot:
        return ResponseSnapshot(
            id=self.id,
            role=self.role,
            text=self.text,
            delta=self.delta,
            detail=self.detail,
            parent_message_id=self.parent_message_id,
            conversation_id=self.conversation_id,
        )

    def finalize(self) -> Message:
        """Trim the accumulated text and freeze it into a :class:`Message`."""

        self.text = self.text.strip()
        self.finalized = True
        return Message(
            id=self.id,
            role=self.role,
            text=self.text,
            parent_message_id=self.parent_message_id,
            conversation_id=self.conversation_id,
            detail=self.detail,
        )


@dataclass(slots=True, frozen=True)
class PromptWindow:
    """Result of legacy prompt assembly."""

    prompt: str
    max_tokens: int
    prompt_tokens: int
    turns_included: int = 1


@dataclass(slots=True, frozen=True)
class ChatWindow:
    """Result of chat-style context assembly."""

    messages: tuple[ChatCompletionMessageParam, ...]
    prompt_tokens: int
    max_tokens: int

    def as_list(self) -> list[ChatCompletionMessageParam]:
        return [cast(ChatCompletionMessageParam, dict(message)) for message in self.messages]


__all__ = [
    "ChatWindow",
    "CompletionParameters",
    "Message",
    "MessageRole",
    "PromptWindow",
    "RESERVED_PARAMETER_KEYS",
    "ResponseSnapshot",
    "StreamingResponse",
    "coerce_role",
]
