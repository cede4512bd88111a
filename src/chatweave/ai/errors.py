"""Error hierarchy raised by the conversation core."""

from __future__ import annotations

from typing import Any


class ChatWeaveError(Exception):
    """Base class for every error surfaced by chatweave."""


class RemoteServiceError(ChatWeaveError):
    """The completion service answered with a non-success status.

    ``status_code`` is ``None`` when the request never produced a response
    (connection refused, DNS failure, protocol error).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        status_text: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.status_text = status_text
        self.reason = reason

    @classmethod
    def from_response(cls, service: str, status_code: int, status_text: str, body: str) -> "RemoteServiceError":
        reason = body or status_text
        return cls(
            f"{service} error {status_code}: {reason}",
            status_code=status_code,
            status_text=status_text,
            reason=reason,
        )


class MalformedResponseError(ChatWeaveError):
    """The service replied successfully but the payload could not be used."""

    def __init__(self, message: str, *, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload


class RequestTimeoutError(ChatWeaveError, TimeoutError):
    """The request deadline elapsed before the response completed."""

    def __init__(self, message: str, *, timeout_ms: float | None = None) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms


class RequestCancelledError(ChatWeaveError):
    """The caller aborted the request; not a failure worth notifying about."""

    def __init__(self, message: str = "Request was cancelled", *, reason: Any = None) -> None:
        super().__init__(message)
        self.reason = reason


__all__ = [
    "ChatWeaveError",
    "MalformedResponseError",
    "RemoteServiceError",
    "RequestCancelledError",
    "RequestTimeoutError",
]
