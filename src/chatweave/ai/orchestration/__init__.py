"""Prompt/context assembly and request shaping."""

from .context_window import ChatContextAssembler, CompletionPromptAssembler, detect_model_family
from .request_builder import CompletionRequest, RequestBuilder

__all__ = [
    "ChatContextAssembler",
    "CompletionPromptAssembler",
    "CompletionRequest",
    "RequestBuilder",
    "detect_model_family",
]
