"""Cooperative cancellation and deadline handling for in-flight requests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generator, Generic, TypeVar

from .errors import RequestCancelledError, RequestTimeoutError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
CancelCallback = Callable[[Any], None]


@dataclass(slots=True, frozen=True)
class DeadlineExceeded:
    """Cancellation reason recorded when a request timer fires."""

    timeout_ms: float


class CancellationSignal:
    """Abort flag that can be shared with, or derived from, another signal.

    A derived signal is cancelled whenever its parent is, but cancelling the
    child never touches the parent.
    """

    def __init__(self, parent: CancellationSignal | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: Any = None
        self._callbacks: list[CancelCallback] = []
        self._detach_parent: Callable[[], None] | None = None
        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.reason)
            else:
                self._detach_parent = parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Any:
        return self._reason

    @property
    def callback_count(self) -> int:
        return len(self._callbacks)

    def detach(self) -> None:
        """Stop following the parent signal; safe to call repeatedly."""

        detach, self._detach_parent = self._detach_parent, None
        if detach is not None:
            detach()

    def cancel(self, reason: Any = None) -> bool:
        """Trigger cancellation; returns ``False`` if already cancelled."""

        if self._event.is_set():
            return False
        self._reason = reason if reason is not None else "cancelled"
        self._event.set()
        self.detach()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception:  # pragma: no cover - callbacks must not block cancellation
                LOGGER.debug("Cancellation callback failed", exc_info=True)
        return True

    def add_callback(self, callback: CancelCallback) -> Callable[[], None]:
        if self.cancelled:
            callback(self._reason)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> Any:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise error_for_reason(self._reason)


def error_for_reason(reason: Any, *, service_name: str = "OpenAI") -> Exception:
    if isinstance(reason, DeadlineExceeded):
        return RequestTimeoutError(
            f"{service_name} timed out waiting for response", timeout_ms=reason.timeout_ms
        )
    return RequestCancelledError(reason=reason)


async def run_guarded(
    operation: Awaitable[T],
    *,
    signal: CancellationSignal | None = None,
    timeout_ms: float | None = None,
    service_name: str = "OpenAI",
) -> T:
    """Await *operation* until it finishes, the signal fires, or the deadline passes.

    With a timeout a derived signal is created so the timer never cancels the
    caller's own signal. On cancellation the underlying task is cancelled,
    which aborts any in-flight HTTP transfer.
    """

    task = asyncio.ensure_future(operation)
    effective = CancellationSignal(parent=signal) if timeout_ms else signal
    if effective is None:
        return await task

    timer: asyncio.TimerHandle | None = None
    if timeout_ms:
        loop = asyncio.get_running_loop()
        timer = loop.call_later(max(0.0, timeout_ms / 1000.0), effective.cancel, DeadlineExceeded(timeout_ms))
    waiter = asyncio.ensure_future(effective.wait())
    try:
        done, _pending = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        LOGGER.debug("Request aborted: %r", effective.reason)
        raise error_for_reason(effective.reason, service_name=service_name)
    finally:
        waiter.cancel()
        if timer is not None:
            timer.cancel()
        if effective is not signal:
            effective.detach()
        if not task.done():
            task.cancel()


class PendingResponse(Generic[T]):
    """Awaitable handle for an in-flight request with a manual ``cancel()``."""

    def __init__(self, task: asyncio.Task[T], signal: CancellationSignal) -> None:
        self._task = task
        self._signal = signal

    @property
    def signal(self) -> CancellationSignal:
        return self._signal

    def done(self) -> bool:
        return self._task.done()

    def cancel(self, reason: Any = None) -> bool:
        """Abort the request; a no-op once the response has completed."""

        if self._task.done():
            return False
        return self._signal.cancel(reason if reason is not None else "cancelled by caller")

    def __await__(self) -> Generator[Any, None, T]:
        return self._task.__await__()

    async def result(self) -> T:
        return await self._task


__all__ = [
    "CancellationSignal",
    "DeadlineExceeded",
    "PendingResponse",
    "error_for_reason",
    "run_guarded",
]
