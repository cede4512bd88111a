"""Server-sent event parsing and response aggregation for completion calls."""

from __future__ import annotations

import codecs
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx

from .ai_types import AggregatorState, ProgressCallback
from .errors import MalformedResponseError, RemoteServiceError, RequestTimeoutError
from .models import ResponseSnapshot, StreamingResponse, coerce_role
from .orchestration.request_builder import CompletionRequest

LOGGER = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_READ_CHUNK_SIZE = 4096


@dataclass(slots=True, frozen=True)
class ServerSentEvent:
    data: str
    event: str = "message"
    id: str | None = None
    retry: int | None = None


class SSEParser:
    """Incremental ``text/event-stream`` parser.

    Feed decoded text in arbitrary slices; complete events are returned as
    soon as their terminating blank line arrives. Handles ``\\n``, ``\\r\\n``
    and bare ``\\r`` line endings, comments, and multi-line ``data`` fields.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._data: list[str] = []
        self._event_type: str | None = None
        self._last_id: str | None = None
        self._retry: int | None = None

    def feed(self, chunk: str) -> list[ServerSentEvent]:
        self._buffer += chunk
        events: list[ServerSentEvent] = []
        while True:
            index = self._line_end()
            if index < 0:
                break
            line = self._buffer[:index]
            skip = 2 if self._buffer.startswith("\r\n", index) else 1
            self._buffer = self._buffer[index + skip :]
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[ServerSentEvent]:
        """Dispatch whatever is left once the byte stream has ended."""

        events: list[ServerSentEvent] = []
        if self._buffer:
            line, self._buffer = self._buffer.rstrip("\r"), ""
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _line_end(self) -> int:
        candidates = [pos for pos in (self._buffer.find("\n"), self._buffer.find("\r")) if pos >= 0]
        if not candidates:
            return -1
        index = min(candidates)
        # A trailing CR may be the first half of CRLF.
        if self._buffer[index] == "\r" and index == len(self._buffer) - 1:
            return -1
        return index

    def _process_line(self, line: str) -> ServerSentEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event_type = value
        elif name == "id":
            if "\0" not in value:
                self._last_id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data:
            self._event_type = None
            return None
        event = ServerSentEvent(
            data="\n".join(self._data),
            event=self._event_type or "message",
            id=self._last_id,
            retry=self._retry,
        )
        self._data = []
        self._event_type = None
        return event


async def iter_text_chunks(source: Any, *, encoding: str = "utf-8") -> AsyncIterator[str]:
    """Normalise a response body into decoded text chunks.

    Accepts pull-based sources (``httpx.Response``, async iterables, plain
    iterables of ``bytes``/``str``) and push-fed readers exposing ``read()``
    (``asyncio.StreamReader`` or file-like objects). Multi-byte characters
    split across chunks are reassembled.
    """

    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def _decode(chunk: bytes | str) -> str:
        if isinstance(chunk, str):
            return chunk
        return decoder.decode(bytes(chunk))

    if isinstance(source, httpx.Response) or hasattr(source, "aiter_bytes"):
        async for chunk in source.aiter_bytes():
            text = _decode(chunk)
            if text:
                yield text
    elif hasattr(source, "__aiter__"):
        async for chunk in source:
            text = _decode(chunk)
            if text:
                yield text
    elif callable(getattr(source, "read", None)):
        while True:
            chunk = source.read(_READ_CHUNK_SIZE)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                break
            text = _decode(chunk)
            if text:
                yield text
    elif isinstance(source, Iterable) and not isinstance(source, (bytes, str)):
        for chunk in source:
            text = _decode(chunk)
            if text:
                yield text
    else:
        raise MalformedResponseError("Unsupported response body type", payload=type(source).__name__)
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


class StreamingAggregator:
    """Drives one completion call and folds its output into a response.

    States: ``IDLE -> REQUESTING -> {STREAMING | BUFFERING_FULL} -> DONE | FAILED``.
    The accumulator is mutated only here; observers receive immutable
    :class:`ResponseSnapshot` copies in wire order.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        request: CompletionRequest,
        response: StreamingResponse,
        *,
        chat_format: bool = True,
        service_name: str = "OpenAI",
    ) -> None:
        self._http = http_client
        self._request = request
        self._response = response
        self._chat_format = chat_format
        self._service_name = service_name
        self._state = AggregatorState.IDLE
        self._id_locked = False
        self.progress_events = 0

    @property
    def state(self) -> AggregatorState:
        return self._state

    @property
    def response(self) -> StreamingResponse:
        return self._response

    async def run(self, on_progress: ProgressCallback | None = None) -> StreamingResponse:
        """Consume the call to completion, notifying *on_progress* per fragment."""

        async for snapshot in self.iter_snapshots():
            if on_progress is None:
                continue
            result = on_progress(snapshot)
            if inspect.isawaitable(result):
                await result
        return self._response

    async def iter_snapshots(self) -> AsyncIterator[ResponseSnapshot]:
        if self._state is not AggregatorState.IDLE:
            raise RuntimeError(f"Aggregator already used (state={self._state.value})")
        self._state = AggregatorState.REQUESTING
        try:
            async with self._http.stream(
                "POST",
                self._request.url,
                content=self._request.to_json(),
                headers=self._request.headers,
            ) as http_response:
                if http_response.status_code >= 400:
                    await self._raise_for_status(http_response)
                if self._request.stream:
                    self._state = AggregatorState.STREAMING
                    async for snapshot in self._consume_events(http_response):
                        yield snapshot
                else:
                    self._state = AggregatorState.BUFFERING_FULL
                    await self._consume_full(http_response)
        except httpx.TimeoutException as exc:
            self._state = AggregatorState.FAILED
            raise RequestTimeoutError(f"{self._service_name} request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            self._state = AggregatorState.FAILED
            raise RemoteServiceError(f"{self._service_name} request failed: {exc}") from exc
        except BaseException:
            if self._state is not AggregatorState.DONE:
                self._state = AggregatorState.FAILED
            raise
        if self._state is not AggregatorState.DONE:
            self._state = AggregatorState.FAILED
            raise MalformedResponseError(
                f"{self._service_name} stream ended before the {DONE_SENTINEL} sentinel",
                payload=self._response.detail,
            )

    async def _raise_for_status(self, http_response: httpx.Response) -> None:
        try:
            await http_response.aread()
            body = http_response.text
        except httpx.HTTPError:
            body = ""
        status_text = http_response.reason_phrase or ""
        LOGGER.debug("%s returned HTTP %s", self._service_name, http_response.status_code)
        raise RemoteServiceError.from_response(
            self._service_name, http_response.status_code, status_text, body
        )

    async def _consume_events(self, http_response: httpx.Response) -> AsyncIterator[ResponseSnapshot]:
        parser = SSEParser()
        async for text in iter_text_chunks(http_response):
            for event in parser.feed(text):
                if self._handle_event(event):
                    yield self._response.snapshot()
                if self._state is AggregatorState.DONE:
                    return
        for event in parser.flush():
            if self._handle_event(event):
                yield self._response.snapshot()
            if self._state is AggregatorState.DONE:
                return

    def _handle_event(self, event: ServerSentEvent) -> bool:
        data = event.data.strip()
        if data == DONE_SENTINEL:
            self._response.text = self._response.text.rstrip()
            self._state = AggregatorState.DONE
            LOGGER.debug("Stream complete after %s fragment(s)", self.progress_events)
            return False
        try:
            fragment = json.loads(data)
        except json.JSONDecodeError as exc:
            self._state = AggregatorState.FAILED
            raise MalformedResponseError(
                f"{self._service_name} stream event could not be parsed: {exc}", payload=data
            ) from exc
        if not isinstance(fragment, Mapping):
            self._state = AggregatorState.FAILED
            raise MalformedResponseError(f"{self._service_name} stream event is not an object", payload=data)
        self._apply_fragment(fragment)
        self.progress_events += 1
        return True

    def _apply_fragment(self, fragment: Mapping[str, Any]) -> None:
        response = self._response
        self._capture_id(fragment)
        response.detail = fragment
        response.delta = None
        choices = fragment.get("choices") or []
        if not choices:
            return
        choice = choices[0] or {}
        if self._chat_format:
            delta = choice.get("delta") or {}
            if delta.get("role"):
                response.role = coerce_role(delta["role"], response.role)
            content = delta.get("content")
        else:
            content = choice.get("text")
        if content:
            response.delta = content
            response.text += content

    async def _consume_full(self, http_response: httpx.Response) -> None:
        await http_response.aread()
        try:
            payload = http_response.json()
        except ValueError as exc:
            self._state = AggregatorState.FAILED
            raise MalformedResponseError(
                f"{self._service_name} response body is not valid JSON", payload=http_response.text
            ) from exc
        choices = payload.get("choices") if isinstance(payload, Mapping) else None
        if not choices:
            self._state = AggregatorState.FAILED
            raise MalformedResponseError(f"{self._service_name} response contained no choices", payload=payload)
        response = self._response
        self._capture_id(payload)
        choice = choices[0] or {}
        if self._chat_format:
            message = choice.get("message") or {}
            response.text = message.get("content") or ""
            response.role = coerce_role(message.get("role"), "assistant")
        else:
            response.text = (choice.get("text") or "").strip()
        response.detail = payload
        self._state = AggregatorState.DONE

    def _capture_id(self, payload: Mapping[str, Any]) -> None:
        if self._id_locked:
            return
        remote_id = payload.get("id")
        if remote_id:
            self._response.id = str(remote_id)
            self._id_locked = True


__all__ = [
    "DONE_SENTINEL",
    "SSEParser",
    "ServerSentEvent",
    "StreamingAggregator",
    "iter_text_chunks",
]
