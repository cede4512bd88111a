"""Truncation detection and follow-up requests for cut-off answers.

The check is a heuristic: an odd number of triple-backtick delimiters means a
code block was opened and never closed. Literal backtick runs that are not
fences can trigger false positives.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Protocol, Union

from .ai_types import MessageStoreProtocol
from .models import Message

LOGGER = logging.getLogger(__name__)

CODE_FENCE = "```"
FENCE_CLOSER = " \r\n ```\r\n"
DEFAULT_CONTINUE_PROMPT = "continue"

ConfirmContinuation = Callable[[Message], Union[bool, Awaitable[bool]]]


class SupportsSendMessage(Protocol):
    @property
    def store(self) -> MessageStoreProtocol:
        ...

    async def send_message(
        self,
        text: str,
        *,
        parent_message_id: str | None = None,
        previous_answer: str | None = None,
        **kwargs: Any,
    ) -> Message:
        ...


def count_fences(text: str) -> int:
    return (text or "").count(CODE_FENCE)


def detect_truncation(text: str) -> bool:
    """Return ``True`` when *text* ends inside an unterminated code fence."""

    return count_fences(text) % 2 == 1


def close_open_fence(text: str) -> str:
    return f"{text}{FENCE_CLOSER}"


@dataclass(slots=True, frozen=True)
class ContinuationCheck:
    truncated: bool
    text: str
    fence_count: int


def inspect_answer(message: Message) -> ContinuationCheck:
    """Classify a finished answer, closing the fence if it was left open."""

    fences = count_fences(message.text)
    if fences % 2 == 0:
        return ContinuationCheck(truncated=False, text=message.text, fence_count=fences)
    return ContinuationCheck(truncated=True, text=close_open_fence(message.text), fence_count=fences)


class ContinuationHelper:
    """Asks for a continuation when an answer looks cut off mid-fence.

    ``confirm`` is the caller's chance to surface the choice to a user; when
    omitted every detected truncation is continued.
    """

    def __init__(
        self,
        client: SupportsSendMessage,
        *,
        continue_prompt: str = DEFAULT_CONTINUE_PROMPT,
        max_continues: int = 1,
        confirm: ConfirmContinuation | None = None,
    ) -> None:
        self._client = client
        self._continue_prompt = continue_prompt
        self._max_continues = max(0, int(max_continues))
        self._confirm = confirm

    async def complete(self, message: Message, **send_kwargs: Any) -> Message:
        """Return *message*, or the merged answer after accepted continuations."""

        current = message
        continues = 0
        while True:
            check = inspect_answer(current)
            if not check.truncated:
                return current
            current = replace(current, text=check.text)
            await self._client.store.set(current)
            if continues >= self._max_continues:
                LOGGER.debug("Answer %s still truncated after %s continuation(s)", current.id, continues)
                return current
            if not await self._accepts(current):
                return current
            continues += 1
            LOGGER.debug("Requesting continuation %s for message %s", continues, current.id)
            current = await self._client.send_message(
                self._continue_prompt,
                parent_message_id=current.id,
                previous_answer=current.text,
                **send_kwargs,
            )

    async def _accepts(self, message: Message) -> bool:
        if self._confirm is None:
            return True
        decision = self._confirm(message)
        if inspect.isawaitable(decision):
            decision = await decision
        return bool(decision)


__all__ = [
    "CODE_FENCE",
    "ContinuationCheck",
    "ContinuationHelper",
    "DEFAULT_CONTINUE_PROMPT",
    "FENCE_CLOSER",
    "close_open_fence",
    "count_fences",
    "detect_truncation",
    "inspect_answer",
]
