"""Tests for SSE parsing, body normalisation, and response aggregation."""

from __future__ import annotations

import asyncio
import io

import httpx
import pytest

from conftest import chat_chunk, sse_payload, text_chunk

from chatweave.ai.ai_types import AggregatorState
from chatweave.ai.errors import MalformedResponseError, RemoteServiceError
from chatweave.ai.models import StreamingResponse
from chatweave.ai.orchestration.request_builder import CompletionRequest
from chatweave.ai.streaming import SSEParser, StreamingAggregator, iter_text_chunks

_URL = "https://api.test/v1/chat/completions"


def _request(stream: bool = True) -> CompletionRequest:
    return CompletionRequest(url=_URL, body={"model": "gpt-3.5-turbo", "stream": stream, "messages": []})


async def _collect(source) -> str:
    return "".join([chunk async for chunk in iter_text_chunks(source)])


def test_sse_parser_handles_mixed_line_endings() -> None:
    parser = SSEParser()

    events = parser.feed("data: a\r\n\r\ndata: b\n")
    assert [event.data for event in events] == ["a"]

    events = parser.feed("\n")
    assert [event.data for event in events] == ["b"]


def test_sse_parser_waits_for_complete_crlf() -> None:
    parser = SSEParser()

    assert parser.feed("data: a\r") == []
    events = parser.feed("\n\r\n")
    assert [event.data for event in events] == ["a"]


def test_sse_parser_joins_multiline_data_and_skips_comments() -> None:
    parser = SSEParser()

    events = parser.feed(": keep-alive\n\nevent: update\nid: 7\ndata: x\ndata: y\n\n")

    assert len(events) == 1
    assert events[0].data == "x\ny"
    assert events[0].event == "update"
    assert events[0].id == "7"


def test_sse_parser_flush_dispatches_trailing_event() -> None:
    parser = SSEParser()

    assert parser.feed("data: tail") == []
    assert [event.data for event in parser.flush()] == ["tail"]


@pytest.mark.asyncio
async def test_iter_text_chunks_reassembles_split_characters() -> None:
    assert await _collect([b"caf", b"\xc3", b"\xa9!"]) == "café!"


@pytest.mark.asyncio
async def test_iter_text_chunks_accepts_async_iterables() -> None:
    async def _source():
        yield "data: "
        yield b"x\n\n"

    assert await _collect(_source()) == "data: x\n\n"


@pytest.mark.asyncio
async def test_iter_text_chunks_reads_push_fed_readers() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"hello ")
    reader.feed_data(b"world")
    reader.feed_eof()

    assert await _collect(reader) == "hello world"
    assert await _collect(io.BytesIO(b"sync reader")) == "sync reader"


@pytest.mark.asyncio
async def test_iter_text_chunks_rejects_unknown_sources() -> None:
    with pytest.raises(MalformedResponseError):
        await _collect(42)


@pytest.mark.asyncio
async def test_aggregator_streams_fragments_in_order(mock_http) -> None:
    http = mock_http(lambda request: httpx.Response(200, content=sse_payload(chat_chunk("Hel"), chat_chunk("lo"), "[DONE]")))
    response = StreamingResponse(parent_message_id="u1")
    aggregator = StreamingAggregator(http, _request(), response)
    snapshots = []

    await aggregator.run(snapshots.append)

    assert [snapshot.text for snapshot in snapshots] == ["Hel", "Hello"]
    assert [snapshot.delta for snapshot in snapshots] == ["Hel", "lo"]
    assert response.text == "Hello"
    assert response.id == "chatcmpl-1"
    assert response.parent_message_id == "u1"
    assert aggregator.state is AggregatorState.DONE
    assert aggregator.progress_events == 2


@pytest.mark.asyncio
async def test_aggregator_awaits_async_callbacks_and_keeps_first_id(mock_http) -> None:
    body = sse_payload(chat_chunk(role="assistant", chunk_id="first"), chat_chunk("ok", chunk_id="second"), "[DONE]")
    http = mock_http(lambda request: httpx.Response(200, content=body))
    response = StreamingResponse()
    seen: list[str] = []

    async def _observer(snapshot) -> None:
        await asyncio.sleep(0)
        seen.append(snapshot.id)

    await StreamingAggregator(http, _request(), response).run(_observer)

    assert seen == ["first", "first"]
    assert response.text == "ok"


@pytest.mark.asyncio
async def test_aggregator_reads_legacy_text_fragments(mock_http) -> None:
    body = sse_payload(text_chunk(" Hi"), text_chunk(" there "), "[DONE]")
    http = mock_http(lambda request: httpx.Response(200, content=body))
    response = StreamingResponse()

    await StreamingAggregator(http, _request(), response, chat_format=False).run()

    assert response.text == " Hi there"
    assert response.id == "cmpl-1"


@pytest.mark.asyncio
async def test_aggregator_raises_remote_error_with_body(mock_http) -> None:
    http = mock_http(lambda request: httpx.Response(429, text="rate limited"))
    aggregator = StreamingAggregator(http, _request(), StreamingResponse())

    with pytest.raises(RemoteServiceError) as excinfo:
        await aggregator.run()

    assert excinfo.value.status_code == 429
    assert excinfo.value.reason == "rate limited"
    assert str(excinfo.value) == "OpenAI error 429: rate limited"
    assert aggregator.state is AggregatorState.FAILED


@pytest.mark.asyncio
async def test_aggregator_wraps_transport_failures(mock_http) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    aggregator = StreamingAggregator(mock_http(_handler), _request(), StreamingResponse())

    with pytest.raises(RemoteServiceError) as excinfo:
        await aggregator.run()

    assert excinfo.value.status_code is None


@pytest.mark.asyncio
async def test_aggregator_rejects_unparsable_fragment(mock_http) -> None:
    http = mock_http(lambda request: httpx.Response(200, content=sse_payload(chat_chunk("a"), "{oops", "[DONE]")))
    aggregator = StreamingAggregator(http, _request(), StreamingResponse())
    snapshots = []

    with pytest.raises(MalformedResponseError):
        await aggregator.run(snapshots.append)

    assert len(snapshots) == 1
    assert aggregator.state is AggregatorState.FAILED


@pytest.mark.asyncio
async def test_aggregator_requires_done_sentinel(mock_http) -> None:
    http = mock_http(lambda request: httpx.Response(200, content=sse_payload(chat_chunk("a"))))
    aggregator = StreamingAggregator(http, _request(), StreamingResponse())

    with pytest.raises(MalformedResponseError):
        await aggregator.run()

    assert aggregator.state is AggregatorState.FAILED


@pytest.mark.asyncio
async def test_aggregator_buffers_non_streaming_reply(mock_http) -> None:
    payload = {"id": "chatcmpl-9", "choices": [{"message": {"role": "assistant", "content": "  Hi  "}}]}
    http = mock_http(lambda request: httpx.Response(200, json=payload))
    response = StreamingResponse()
    aggregator = StreamingAggregator(http, _request(stream=False), response)
    calls = []

    await aggregator.run(calls.append)

    assert calls == []
    assert response.id == "chatcmpl-9"
    assert response.finalize().text == "Hi"
    assert aggregator.state is AggregatorState.DONE


@pytest.mark.asyncio
async def test_aggregator_requires_choices_in_full_reply(mock_http) -> None:
    http = mock_http(lambda request: httpx.Response(200, json={"id": "x", "choices": []}))
    aggregator = StreamingAggregator(http, _request(stream=False), StreamingResponse())

    with pytest.raises(MalformedResponseError):
        await aggregator.run()

    assert aggregator.state is AggregatorState.FAILED


@pytest.mark.asyncio
async def test_aggregator_cannot_be_reused(mock_http) -> None:
    http = mock_http(lambda request: httpx.Response(200, content=sse_payload("[DONE]")))
    aggregator = StreamingAggregator(http, _request(), StreamingResponse())
    await aggregator.run()

    with pytest.raises(RuntimeError):
        await aggregator.run()
