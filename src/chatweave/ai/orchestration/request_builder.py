"""Completion request assembly: parameter layering plus wire body shaping."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from ..models import ChatWindow, CompletionParameters, PromptWindow

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_COMPLETION_PARAMETERS: Mapping[str, Any] = {
    "temperature": 0.8,
    "top_p": 1,
    "presence_penalty": 1,
}
CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
COMPLETIONS_PATH = "/v1/completions"

ParameterLayer = Mapping[str, Any] | CompletionParameters | None


def resolve_stream_flag(stream: bool | None, *, has_observer: bool) -> bool:
    """Observers always imply streaming; otherwise honour the caller (default off)."""

    if has_observer:
        return True
    return bool(stream)


def join_endpoint(base_url: str, path: str) -> str:
    base = (base_url or DEFAULT_BASE_URL).rstrip("/")
    if base.endswith("/v1") and path.startswith("/v1/"):
        path = path[len("/v1") :]
    return f"{base}{path}"


@dataclass(slots=True, frozen=True)
class CompletionRequest:
    """Fully resolved HTTP request for the completion service."""

    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def stream(self) -> bool:
        return bool(self.body.get("stream"))

    def to_json(self) -> str:
        return json.dumps(self.body, ensure_ascii=False)


class RequestBuilder:
    """Merges parameter layers and attaches the assembled context.

    Layers, lowest precedence first: built-in defaults, instance options,
    per-call overrides. ``messages``/``prompt``/``n``/``stream`` are dropped
    from every layer; only the builder sets them.
    """

    def __init__(
        self,
        *,
        default_model: str,
        instance_params: ParameterLayer = None,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        organization: str | None = None,
        default_headers: Mapping[str, str] | None = None,
        default_stop: list[str] | None = None,
    ) -> None:
        defaults: dict[str, Any] = {"model": default_model, **DEFAULT_COMPLETION_PARAMETERS}
        self._defaults = CompletionParameters.from_mapping(defaults)
        self._instance = CompletionParameters.from_mapping(instance_params)
        if default_stop and self._instance.stop is None:
            self._instance.stop = list(default_stop)
        self._base_url = base_url or DEFAULT_BASE_URL
        self._api_key = api_key
        self._organization = organization
        self._default_headers = dict(default_headers or {})

    @property
    def instance_params(self) -> CompletionParameters:
        return self._instance

    @property
    def model(self) -> str:
        return self._instance.model or self._defaults.model or ""

    @property
    def headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json", **self._default_headers}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._organization:
            headers["OpenAI-Organization"] = self._organization
        return headers

    def merge_parameters(self, overrides: ParameterLayer = None) -> CompletionParameters:
        return CompletionParameters.merged((self._defaults, self._instance, overrides))

    def build_chat_request(
        self,
        window: ChatWindow,
        *,
        overrides: ParameterLayer = None,
        stream: bool | None = None,
        has_observer: bool = False,
    ) -> CompletionRequest:
        body = self.merge_parameters(overrides).as_payload()
        body["messages"] = window.as_list()
        body["stream"] = resolve_stream_flag(stream, has_observer=has_observer)
        return CompletionRequest(
            url=join_endpoint(self._base_url, CHAT_COMPLETIONS_PATH),
            body=body,
            headers=self.headers,
        )

    def build_completion_request(
        self,
        window: PromptWindow,
        *,
        overrides: ParameterLayer = None,
        stream: bool | None = None,
        has_observer: bool = False,
    ) -> CompletionRequest:
        body = self.merge_parameters(overrides).as_payload()
        body["prompt"] = window.prompt
        body["stream"] = resolve_stream_flag(stream, has_observer=has_observer)
        body["max_tokens"] = window.max_tokens
        return CompletionRequest(
            url=join_endpoint(self._base_url, COMPLETIONS_PATH),
            body=body,
            headers=self.headers,
        )


__all__ = [
    "CHAT_COMPLETIONS_PATH",
    "COMPLETIONS_PATH",
    "CompletionRequest",
    "DEFAULT_BASE_URL",
    "DEFAULT_COMPLETION_PARAMETERS",
    "RequestBuilder",
    "join_endpoint",
    "resolve_stream_flag",
]
