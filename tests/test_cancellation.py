"""Tests for cancellation signals and deadline handling."""

from __future__ import annotations

import asyncio

import pytest

from chatweave.ai.cancellation import (
    CancellationSignal,
    DeadlineExceeded,
    PendingResponse,
    error_for_reason,
    run_guarded,
)
from chatweave.ai.errors import RequestCancelledError, RequestTimeoutError


async def _slow(result: str = "late") -> str:
    await asyncio.sleep(5)
    return result


@pytest.mark.asyncio
async def test_derived_signal_follows_parent_only() -> None:
    parent = CancellationSignal()
    child = CancellationSignal(parent=parent)
    sibling = CancellationSignal(parent=parent)

    assert child.cancel("child only") is True
    assert parent.cancelled is False
    assert parent.callback_count == 1

    parent.cancel("stop")
    assert sibling.cancelled is True
    assert sibling.reason == "stop"
    assert child.reason == "child only"


@pytest.mark.asyncio
async def test_signal_callbacks_fire_once() -> None:
    signal = CancellationSignal()
    reasons: list[object] = []
    remove = signal.add_callback(reasons.append)
    other = signal.add_callback(lambda reason: reasons.append("removed"))
    other()

    assert signal.cancel("x") is True
    assert signal.cancel("y") is False
    assert reasons == ["x"]
    remove()


@pytest.mark.asyncio
async def test_run_guarded_returns_result() -> None:
    async def _fast() -> int:
        return 3

    assert await run_guarded(_fast(), signal=CancellationSignal(), timeout_ms=1_000) == 3
    assert await run_guarded(_fast()) == 3


@pytest.mark.asyncio
async def test_run_guarded_raises_on_manual_cancel() -> None:
    signal = CancellationSignal()
    asyncio.get_running_loop().call_later(0.01, signal.cancel, "user pressed stop")

    with pytest.raises(RequestCancelledError) as excinfo:
        await run_guarded(_slow(), signal=signal)

    assert excinfo.value.reason == "user pressed stop"


@pytest.mark.asyncio
async def test_run_guarded_times_out_without_touching_callers_signal() -> None:
    signal = CancellationSignal()

    with pytest.raises(RequestTimeoutError) as excinfo:
        await run_guarded(_slow(), signal=signal, timeout_ms=5)

    assert excinfo.value.timeout_ms == 5
    assert isinstance(excinfo.value, TimeoutError)
    assert signal.cancelled is False


@pytest.mark.asyncio
async def test_run_guarded_cancels_the_underlying_work() -> None:
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def _work() -> None:
        started.set()
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    signal = CancellationSignal()

    async def _cancel_when_started() -> None:
        await started.wait()
        signal.cancel()

    canceller = asyncio.ensure_future(_cancel_when_started())
    with pytest.raises(RequestCancelledError):
        await run_guarded(_work(), signal=signal)
    await canceller

    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_pending_response_cancel_after_completion_is_noop() -> None:
    async def _fast() -> str:
        return "done"

    signal = CancellationSignal()
    pending = PendingResponse(asyncio.ensure_future(run_guarded(_fast(), signal=signal)), signal)

    assert await pending == "done"
    assert pending.done() is True
    assert pending.cancel() is False
    assert signal.cancelled is False
    assert await pending.result() == "done"


def test_error_for_reason_maps_deadlines() -> None:
    assert isinstance(error_for_reason(DeadlineExceeded(10)), RequestTimeoutError)
    assert isinstance(error_for_reason("stop"), RequestCancelledError)


@pytest.mark.asyncio
async def test_repeated_deadlines_leave_no_callbacks_on_shared_signal() -> None:
    async def _fast() -> str:
        return "ok"

    session = CancellationSignal()
    for _ in range(50):
        assert await run_guarded(_fast(), signal=session, timeout_ms=1_000) == "ok"

    with pytest.raises(RequestTimeoutError):
        await run_guarded(_slow(), signal=session, timeout_ms=5)

    assert session.callback_count == 0
    assert session.cancelled is False


@pytest.mark.asyncio
async def test_detached_signal_stops_following_parent() -> None:
    parent = CancellationSignal()
    child = CancellationSignal(parent=parent)
    assert parent.callback_count == 1

    child.detach()
    child.detach()
    parent.cancel("stop")

    assert parent.callback_count == 0
    assert child.cancelled is False
