"""Token-bounded reconstruction of a conversation from parent-linked messages.

Both assemblers walk ``parent_message_id`` links newest-to-oldest through the
message store and prepend each resolved ancestor, so the final context reads
oldest-to-newest. A link that does not resolve ends the walk; it is never an
error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Sequence, cast

from openai.types.chat import ChatCompletionMessageParam

from ..ai_types import MessageStoreProtocol, ModelFamily, TokenCounterProtocol
from ..models import ChatWindow, Message, PromptWindow
from ..tokenizer import CHAT_END_TOKEN, CHAT_SEP_TOKEN, END_OF_TEXT

LOGGER = logging.getLogger(__name__)

CHAT_DEFAULT_MODEL = "gpt-3.5-turbo"
LEGACY_DEFAULT_MODEL = "text-davinci-003"
CHAT_DEFAULT_MAX_MODEL_TOKENS = 4000
LEGACY_DEFAULT_MAX_MODEL_TOKENS = 4096
DEFAULT_MAX_RESPONSE_TOKENS = 1000
USER_LABEL_DEFAULT = "User"
ASSISTANT_LABEL_DEFAULT = "ChatGPT"
TRANSCRIPT_ASSISTANT_LABEL = "Assistant"

_LEGACY_CHAT_PREFIXES: tuple[str, ...] = ("text-chat", "text-davinci-002-render")


def detect_model_family(model: str | None) -> ModelFamily:
    """Map a model name onto the endpoint/prompt family it is served through."""

    name = (model or "").strip().lower()
    if name.startswith("gpt-"):
        return ModelFamily.CHAT
    if name.startswith(_LEGACY_CHAT_PREFIXES):
        return ModelFamily.LEGACY_CHAT
    if name.startswith("code-"):
        return ModelFamily.CODEX
    return ModelFamily.TEXT


@dataclass(slots=True, frozen=True)
class TurnMarkers:
    """End-of-turn and section-separator tokens for a legacy model family."""

    end_token: str
    sep_token: str

    @property
    def stop_sequences(self) -> list[str]:
        if self.end_token == self.sep_token:
            return [self.end_token]
        return [self.end_token, self.sep_token]


def markers_for_family(family: ModelFamily) -> TurnMarkers:
    if family is ModelFamily.LEGACY_CHAT:
        return TurnMarkers(end_token=CHAT_END_TOKEN, sep_token=CHAT_SEP_TOKEN)
    return TurnMarkers(end_token=END_OF_TEXT, sep_token=END_OF_TEXT)


def response_token_limit(max_model_tokens: int, max_response_tokens: int, prompt_tokens: int) -> int:
    """Tokens left for the answer; always at least one."""

    return max(1, min(max_model_tokens - prompt_tokens, max_response_tokens))


class _WindowAssembler:
    def __init__(
        self,
        *,
        store: MessageStoreProtocol,
        token_counter: TokenCounterProtocol,
        max_model_tokens: int,
        max_response_tokens: int,
        with_context: bool,
    ) -> None:
        if max_model_tokens <= 0:
            raise ValueError("max_model_tokens must be positive")
        self._store = store
        self._token_counter = token_counter
        self._max_model_tokens = int(max_model_tokens)
        self._max_response_tokens = max(1, int(max_response_tokens))
        self._with_context = with_context

    @property
    def token_budget(self) -> int:
        return self._max_model_tokens - self._max_response_tokens

    @property
    def max_model_tokens(self) -> int:
        return self._max_model_tokens

    @property
    def max_response_tokens(self) -> int:
        return self._max_response_tokens

    async def _resolve_parent(self, parent_message_id: str | None) -> Message | None:
        if not self._with_context or not parent_message_id:
            return None
        return await self._store.get(parent_message_id)


class ChatContextAssembler(_WindowAssembler):
    """Builds the ordered role-tagged turn list for chat-style models."""

    def __init__(
        self,
        *,
        store: MessageStoreProtocol,
        token_counter: TokenCounterProtocol,
        max_model_tokens: int = CHAT_DEFAULT_MAX_MODEL_TOKENS,
        max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS,
        with_context: bool = True,
        user_label: str = USER_LABEL_DEFAULT,
        assistant_label: str = TRANSCRIPT_ASSISTANT_LABEL,
    ) -> None:
        super().__init__(
            store=store,
            token_counter=token_counter,
            max_model_tokens=max_model_tokens,
            max_response_tokens=max_response_tokens,
            with_context=with_context,
        )
        self._user_label = user_label
        self._assistant_label = assistant_label

    async def assemble(
        self,
        text: str,
        *,
        system_message: str | None = None,
        parent_message_id: str | None = None,
        name: str | None = None,
    ) -> ChatWindow:
        messages: list[ChatCompletionMessageParam] = []
        if system_message is not None:
            messages.append(cast(ChatCompletionMessageParam, {"role": "system", "content": system_message}))
        system_offset = len(messages)
        next_messages = list(messages)
        user_turn: dict[str, Any] = {"role": "user", "content": text}
        if name:
            user_turn["name"] = name
        next_messages.append(cast(ChatCompletionMessageParam, user_turn))

        committed: list[ChatCompletionMessageParam] | None = None
        committed_tokens = 0
        budget = self.token_budget
        while True:
            candidate_tokens = self._token_counter.count(self.render_transcript(next_messages))
            if committed is not None and candidate_tokens > budget:
                LOGGER.debug(
                    "Chat context reached %s/%s tokens; dropping older ancestors", candidate_tokens, budget
                )
                break
            committed = next_messages
            committed_tokens = candidate_tokens
            if candidate_tokens > budget:
                break
            parent = await self._resolve_parent(parent_message_id)
            if parent is None:
                break
            next_messages = [
                *next_messages[:system_offset],
                parent.to_chat_param(),
                *next_messages[system_offset:],
            ]
            parent_message_id = parent.parent_message_id

        return ChatWindow(
            messages=tuple(committed),
            prompt_tokens=committed_tokens,
            max_tokens=response_token_limit(self._max_model_tokens, self._max_response_tokens, committed_tokens),
        )

    def render_transcript(self, messages: Sequence[ChatCompletionMessageParam]) -> str:
        """Flatten turns into the text whose token count is checked against the budget."""

        blocks: list[str] = []
        for message in messages:
            role = message.get("role")
            content = message.get("content") or ""
            if role == "system":
                blocks.append(f"Instructions:\n{content}")
            elif role == "user":
                blocks.append(f"{self._user_label}:\n{content}")
            else:
                blocks.append(f"{self._assistant_label}:\n{content}")
        return "\n\n".join(blocks)


class CompletionPromptAssembler(_WindowAssembler):
    """Builds a single labelled prompt string for legacy completion models."""

    def __init__(
        self,
        *,
        store: MessageStoreProtocol,
        token_counter: TokenCounterProtocol,
        family: ModelFamily = ModelFamily.TEXT,
        max_model_tokens: int = LEGACY_DEFAULT_MAX_MODEL_TOKENS,
        max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS,
        with_context: bool = True,
        user_label: str = USER_LABEL_DEFAULT,
        assistant_label: str = ASSISTANT_LABEL_DEFAULT,
        today: Callable[[], date] = date.today,
    ) -> None:
        super().__init__(
            store=store,
            token_counter=token_counter,
            max_model_tokens=max_model_tokens,
            max_response_tokens=max_response_tokens,
            with_context=with_context,
        )
        self._markers = markers_for_family(family)
        self._user_label = user_label
        self._assistant_label = assistant_label
        self._today = today

    @property
    def markers(self) -> TurnMarkers:
        return self._markers

    def default_prefix(self, system_message: str | None = None) -> str:
        sep = self._markers.sep_token
        if system_message:
            return f"Instructions:\n{system_message}{sep}"
        current_date = self._today().isoformat()
        return (
            f"Instructions:\nYou are {self._assistant_label}, a large language model trained by OpenAI.\n"
            f"Current date: {current_date}{sep}"
        )

    def default_suffix(self) -> str:
        return f"\n{self._assistant_label}:\n"

    def format_turn(self, message: Message) -> str:
        label = self._user_label if message.role == "user" else self._assistant_label
        return f"{label}:\n\n{message.text}{self._markers.end_token}\n\n"

    async def assemble(
        self,
        text: str,
        *,
        system_message: str | None = None,
        parent_message_id: str | None = None,
        prompt_prefix: str | None = None,
        prompt_suffix: str | None = None,
    ) -> PromptWindow:
        prefix = prompt_prefix if prompt_prefix is not None else self.default_prefix(system_message)
        suffix = prompt_suffix if prompt_suffix is not None else self.default_suffix()
        budget = self.token_budget

        next_body = f"{self._user_label}:\n\n{text}{self._markers.end_token}"
        prompt: str | None = None
        prompt_tokens = 0
        turns = 0
        while True:
            candidate = f"{prefix}{next_body}{suffix}"
            candidate_tokens = self._token_counter.count(candidate)
            fits = candidate_tokens <= budget
            if prompt is not None and not fits:
                LOGGER.debug("Prompt reached %s/%s tokens; dropping older ancestors", candidate_tokens, budget)
                break
            body = next_body
            prompt = candidate
            prompt_tokens = candidate_tokens
            turns += 1
            if not fits:
                break
            parent = await self._resolve_parent(parent_message_id)
            if parent is None:
                break
            next_body = f"{self.format_turn(parent)}{body}"
            parent_message_id = parent.parent_message_id

        return PromptWindow(
            prompt=prompt,
            max_tokens=response_token_limit(self._max_model_tokens, self._max_response_tokens, prompt_tokens),
            prompt_tokens=prompt_tokens,
            turns_included=turns,
        )


__all__ = [
    "ASSISTANT_LABEL_DEFAULT",
    "CHAT_DEFAULT_MAX_MODEL_TOKENS",
    "CHAT_DEFAULT_MODEL",
    "ChatContextAssembler",
    "CompletionPromptAssembler",
    "DEFAULT_MAX_RESPONSE_TOKENS",
    "LEGACY_DEFAULT_MAX_MODEL_TOKENS",
    "LEGACY_DEFAULT_MODEL",
    "TurnMarkers",
    "USER_LABEL_DEFAULT",
    "detect_model_family",
    "markers_for_family",
    "response_token_limit",
]
