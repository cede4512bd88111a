"""Token counting backed by tiktoken with a deterministic byte fallback."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Sequence

import tiktoken

from .ai_types import ModelFamily, TokenCounterProtocol

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_DEFAULT_ENCODING = "cl100k_base"

END_OF_TEXT = "<|endoftext|>"
CHAT_END_TOKEN = "<|im_end|>"
CHAT_SEP_TOKEN = "<|im_sep|>"
_CHAT_MARKERS: tuple[str, ...] = (CHAT_END_TOKEN, CHAT_SEP_TOKEN)


def substitute_chat_markers(text: str) -> str:
    """Replace chat turn sentinels with the generic end-of-text marker.

    The service tokenizes ``<|im_end|>``/``<|im_sep|>`` as single special
    tokens; counting them as plain text would over-estimate the prompt.
    """

    for marker in _CHAT_MARKERS:
        text = text.replace(marker, END_OF_TEXT)
    return text


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(
        self,
        *,
        model_name: str | None = None,
        charset: str = "utf-8",
        bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN,
        chat_markers: bool = False,
    ) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))
        self._chat_markers = chat_markers

    def count(self, text: str) -> int:
        return self.estimate(text)

    def encode(self, text: str) -> list[int]:
        data = self._prepare(text).encode(self._charset, errors="ignore")
        step = self._bytes_per_token
        return [int.from_bytes(data[index : index + step], "big") for index in range(0, len(data), step)]

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = self._prepare(text).encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))

    def _prepare(self, text: str) -> str:
        return substitute_chat_markers(text) if self._chat_markers else text


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(
        self,
        model_name: str,
        *,
        encoding_name: str | None = None,
        chat_markers: bool = False,
        encoding: Any | None = None,
    ) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._chat_markers = chat_markers
        self._encoding = encoding if encoding is not None else self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name, chat_markers=chat_markers)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encode(text))

    def encode(self, text: str) -> Sequence[int]:
        if self._chat_markers:
            text = substitute_chat_markers(text)
        return self._encoding.encode(text, allowed_special="all")

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to %s encoding for model %s", _DEFAULT_ENCODING, model_name)
            return tiktoken.get_encoding(_DEFAULT_ENCODING)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def build_token_counter(model_name: str, family: ModelFamily) -> TokenCounterProtocol:
    """Return the tiktoken counter appropriate for *model_name*."""

    chat_markers = family in (ModelFamily.CHAT, ModelFamily.LEGACY_CHAT)
    return TiktokenCounter(model_name, chat_markers=chat_markers)


__all__ = [
    "ApproxByteCounter",
    "CHAT_END_TOKEN",
    "CHAT_SEP_TOKEN",
    "END_OF_TEXT",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "build_token_counter",
    "substitute_chat_markers",
]
