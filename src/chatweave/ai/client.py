"""Async conversation clients for OpenAI-compatible completion endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Mapping

import httpx

from .ai_types import MessageStoreProtocol, ModelFamily, ProgressCallback, TokenCounterProtocol
from .ai_types import GetMessageById, UpsertMessage
from .cancellation import CancellationSignal, PendingResponse, run_guarded
from .memory.message_store import CallbackMessageStore, LRUMessageStore
from .models import Message, ResponseSnapshot, StreamingResponse
from .orchestration.context_window import (
    ASSISTANT_LABEL_DEFAULT,
    CHAT_DEFAULT_MAX_MODEL_TOKENS,
    CHAT_DEFAULT_MODEL,
    DEFAULT_MAX_RESPONSE_TOKENS,
    LEGACY_DEFAULT_MAX_MODEL_TOKENS,
    LEGACY_DEFAULT_MODEL,
    USER_LABEL_DEFAULT,
    ChatContextAssembler,
    CompletionPromptAssembler,
    detect_model_family,
    markers_for_family,
)
from .orchestration.request_builder import DEFAULT_BASE_URL, CompletionRequest, ParameterLayer, RequestBuilder
from .streaming import StreamingAggregator
from .tokenizer import TokenCounterRegistry, build_token_counter

LOGGER = logging.getLogger(__name__)
_STREAM_END = object()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a conversation client."""

    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    organization: str | None = None
    model: str | None = None
    completion_params: Mapping[str, Any] | None = None
    system_message: str | None = None
    max_model_tokens: int | None = None
    max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS
    user_label: str = USER_LABEL_DEFAULT
    assistant_label: str = ASSISTANT_LABEL_DEFAULT
    with_context: bool = True
    request_timeout: float | None = 90.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False
    service_name: str = "OpenAI"


class _ConversationClient(ABC):
    """Shared plumbing: store wiring, request lifecycle, and write-back."""

    default_model = CHAT_DEFAULT_MODEL
    chat_format = True

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        store: MessageStoreProtocol | None = None,
        token_counter: TokenCounterProtocol | None = None,
        token_counters: TokenCounterRegistry | None = None,
        get_message_by_id: GetMessageById | None = None,
        upsert_message: UpsertMessage | None = None,
    ) -> None:
        self._settings = settings
        self._http = http_client or self._build_http_client(settings)
        self._owns_http = http_client is None
        self._store = self._build_store(store, get_message_by_id, upsert_message)
        self._model = self._resolve_model(settings)
        self._family = detect_model_family(self._model)
        self._token_counter = token_counter or self._resolve_token_counter(token_counters)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def store(self) -> MessageStoreProtocol:
        return self._store

    @property
    def model(self) -> str:
        return self._model

    @property
    def family(self) -> ModelFamily:
        return self._family

    @property
    def token_counter(self) -> TokenCounterProtocol:
        return self._token_counter

    def start_message(
        self,
        text: str,
        *,
        parent_message_id: str | None = None,
        message_id: str | None = None,
        conversation_id: str | None = None,
        timeout_ms: float | None = None,
        on_progress: ProgressCallback | None = None,
        cancellation_signal: CancellationSignal | None = None,
        system_message: str | None = None,
        completion_params: ParameterLayer = None,
        stream: bool | None = None,
        name: str | None = None,
        previous_answer: str | None = None,
        **prompt_options: Any,
    ) -> PendingResponse[Message]:
        """Schedule a request and return a cancellable handle to its reply.

        Must be called from within a running event loop.
        """

        signal = CancellationSignal(parent=cancellation_signal)
        operation = self._execute(
            text,
            parent_message_id=parent_message_id,
            message_id=message_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            on_progress=on_progress,
            system_message=system_message,
            completion_params=completion_params,
            stream=stream,
            name=name,
            previous_answer=previous_answer,
            prompt_options=prompt_options,
        )
        guarded = run_guarded(
            operation,
            signal=signal,
            timeout_ms=timeout_ms,
            service_name=self._settings.service_name,
        )
        task = asyncio.get_running_loop().create_task(guarded)
        task.add_done_callback(lambda _task: signal.detach())
        return PendingResponse(task, signal)

    async def send_message(self, text: str, **options: Any) -> Message:
        """Send *text* and return the persisted assistant reply."""

        return await self.start_message(text, **options)

    async def stream_message(self, text: str, **options: Any) -> AsyncIterator[ResponseSnapshot]:
        """Yield progress snapshots in wire order; errors surface after the last one."""

        if options.pop("on_progress", None) is not None:
            raise TypeError("stream_message delivers progress itself; drop on_progress")
        queue: asyncio.Queue[Any] = asyncio.Queue()
        pending = self.start_message(text, on_progress=queue.put_nowait, **options)
        pending_task = asyncio.ensure_future(pending.result())
        pending_task.add_done_callback(lambda _task: queue.put_nowait(_STREAM_END))
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_END:
                    break
                yield item
            await pending_task
        finally:
            pending.cancel()

    async def get_message(self, message_id: str) -> Message | None:
        return await self._store.get(message_id)

    async def clear_messages(self) -> None:
        await self._store.clear()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""

        if self._owns_http:
            await self._http.aclose()

    async def _execute(
        self,
        text: str,
        *,
        parent_message_id: str | None,
        message_id: str,
        conversation_id: str | None,
        on_progress: ProgressCallback | None,
        system_message: str | None,
        completion_params: ParameterLayer,
        stream: bool | None,
        name: str | None,
        previous_answer: str | None,
        prompt_options: Mapping[str, Any],
    ) -> Message:
        user_message = Message(
            id=message_id,
            role="user",
            text=text,
            parent_message_id=parent_message_id,
            conversation_id=conversation_id,
            name=name,
        )
        if system_message is None:
            system_message = self._settings.system_message
        request = await self._build_request(
            text,
            parent_message_id=parent_message_id,
            system_message=system_message,
            completion_params=completion_params,
            stream=stream,
            has_observer=on_progress is not None,
            name=name,
            prompt_options=prompt_options,
        )
        LOGGER.debug(
            "Starting %s completion via %s (stream=%s)",
            "chat" if self.chat_format else "text",
            request.body.get("model"),
            request.stream,
        )
        if self._settings.debug_logging:
            self._log_request_payload(request)

        accumulator = StreamingResponse(parent_message_id=message_id, conversation_id=conversation_id)
        aggregator = StreamingAggregator(
            self._http,
            request,
            accumulator,
            chat_format=self.chat_format,
            service_name=self._settings.service_name,
        )
        await aggregator.run(self._wrap_progress(on_progress, previous_answer))

        reply = accumulator.finalize()
        if not reply.id:
            reply = replace(reply, id=str(uuid.uuid4()))
        if previous_answer:
            reply = replace(reply, text=f"{previous_answer}{reply.text}")
        await self._store.set(user_message)
        await self._store.set(reply)
        return reply

    @abstractmethod
    async def _build_request(
        self,
        text: str,
        *,
        parent_message_id: str | None,
        system_message: str | None,
        completion_params: ParameterLayer,
        stream: bool | None,
        has_observer: bool,
        name: str | None,
        prompt_options: Mapping[str, Any],
    ) -> CompletionRequest:
        """Assemble the context for one turn and shape it into a request."""

    def _request_builder(self, *, default_stop: list[str] | None = None) -> RequestBuilder:
        return RequestBuilder(
            default_model=self.default_model,
            instance_params={**dict(self._settings.completion_params or {}), "model": self._model},
            base_url=self._settings.base_url,
            api_key=self._settings.api_key,
            organization=self._settings.organization,
            default_headers=self._settings.default_headers,
            default_stop=default_stop,
        )

    @staticmethod
    def _wrap_progress(
        on_progress: ProgressCallback | None, previous_answer: str | None
    ) -> ProgressCallback | None:
        if on_progress is None or not previous_answer:
            return on_progress

        def _with_previous(snapshot: ResponseSnapshot):
            return on_progress(replace(snapshot, text=f"{previous_answer}{snapshot.text}"))

        return _with_previous

    def _resolve_model(self, settings: ClientSettings) -> str:
        params = settings.completion_params or {}
        return str(params.get("model") or settings.model or self.default_model)

    def _resolve_token_counter(self, registry: TokenCounterRegistry | None) -> TokenCounterProtocol:
        if registry is not None and registry.has(self._model):
            return registry.get(self._model)
        return build_token_counter(self._model, self._family)

    @staticmethod
    def _build_store(
        store: MessageStoreProtocol | None,
        get_message_by_id: GetMessageById | None,
        upsert_message: UpsertMessage | None,
    ) -> MessageStoreProtocol:
        base = store or LRUMessageStore()
        if get_message_by_id is None and upsert_message is None:
            return base
        return CallbackMessageStore(
            get_message_by_id or base.get,
            upsert_message or base.set,
            clear_messages=base.clear,
        )

    @staticmethod
    def _build_http_client(settings: ClientSettings) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.request_timeout)

    def _log_request_payload(self, request: CompletionRequest) -> None:
        try:
            serialized = json.dumps(request.body, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Completion payload (unserializable): %s", request.body)
        else:
            LOGGER.debug("Completion payload for %s:\n%s", request.url, serialized)


class ChatModelClient(_ConversationClient):
    """Client for chat-style models served from ``/v1/chat/completions``."""

    default_model = CHAT_DEFAULT_MODEL
    chat_format = True

    def __init__(self, settings: ClientSettings, **kwargs: Any) -> None:
        super().__init__(settings, **kwargs)
        self._assembler = ChatContextAssembler(
            store=self._store,
            token_counter=self._token_counter,
            max_model_tokens=settings.max_model_tokens or CHAT_DEFAULT_MAX_MODEL_TOKENS,
            max_response_tokens=settings.max_response_tokens,
            with_context=settings.with_context,
            user_label=settings.user_label,
        )
        self._builder = self._request_builder()

    @property
    def assembler(self) -> ChatContextAssembler:
        return self._assembler

    @property
    def request_builder(self) -> RequestBuilder:
        return self._builder

    async def _build_request(
        self,
        text: str,
        *,
        parent_message_id: str | None,
        system_message: str | None,
        completion_params: ParameterLayer,
        stream: bool | None,
        has_observer: bool,
        name: str | None,
        prompt_options: Mapping[str, Any],
    ) -> CompletionRequest:
        if prompt_options:
            raise TypeError(f"Unsupported options for chat models: {sorted(prompt_options)}")
        window = await self._assembler.assemble(
            text,
            system_message=system_message,
            parent_message_id=parent_message_id,
            name=name,
        )
        LOGGER.debug("Assembled %s chat turn(s), %s prompt token(s)", len(window.messages), window.prompt_tokens)
        return self._builder.build_chat_request(
            window,
            overrides=completion_params,
            stream=stream,
            has_observer=has_observer,
        )


class CompletionModelClient(_ConversationClient):
    """Client for legacy prompt-completion models served from ``/v1/completions``."""

    default_model = LEGACY_DEFAULT_MODEL
    chat_format = False

    def __init__(self, settings: ClientSettings, **kwargs: Any) -> None:
        super().__init__(settings, **kwargs)
        self._assembler = CompletionPromptAssembler(
            store=self._store,
            token_counter=self._token_counter,
            family=self._family,
            max_model_tokens=settings.max_model_tokens or LEGACY_DEFAULT_MAX_MODEL_TOKENS,
            max_response_tokens=settings.max_response_tokens,
            with_context=settings.with_context,
            user_label=settings.user_label,
            assistant_label=settings.assistant_label,
        )
        self._builder = self._request_builder(default_stop=markers_for_family(self._family).stop_sequences)

    @property
    def assembler(self) -> CompletionPromptAssembler:
        return self._assembler

    @property
    def request_builder(self) -> RequestBuilder:
        return self._builder

    async def _build_request(
        self,
        text: str,
        *,
        parent_message_id: str | None,
        system_message: str | None,
        completion_params: ParameterLayer,
        stream: bool | None,
        has_observer: bool,
        name: str | None,
        prompt_options: Mapping[str, Any],
    ) -> CompletionRequest:
        unknown = set(prompt_options) - {"prompt_prefix", "prompt_suffix"}
        if unknown:
            raise TypeError(f"Unsupported options for completion models: {sorted(unknown)}")
        window = await self._assembler.assemble(
            text,
            system_message=system_message,
            parent_message_id=parent_message_id,
            prompt_prefix=prompt_options.get("prompt_prefix"),
            prompt_suffix=prompt_options.get("prompt_suffix"),
        )
        LOGGER.debug(
            "Assembled prompt with %s turn(s), %s token(s), max_tokens=%s",
            window.turns_included,
            window.prompt_tokens,
            window.max_tokens,
        )
        return self._builder.build_completion_request(
            window,
            overrides=completion_params,
            stream=stream,
            has_observer=has_observer,
        )


def create_client(settings: ClientSettings, **kwargs: Any) -> _ConversationClient:
    """Return the client matching the configured model's family."""

    params = settings.completion_params or {}
    model = params.get("model") or settings.model or CHAT_DEFAULT_MODEL
    if detect_model_family(str(model)).uses_chat_endpoint:
        return ChatModelClient(settings, **kwargs)
    return CompletionModelClient(settings, **kwargs)


__all__ = ["ChatModelClient", "ClientSettings", "CompletionModelClient", "create_client"]
