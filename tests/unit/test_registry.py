from __future__ import annotations

from datetime import UTC, datetime

import pytest

from toolbridge.mcp.registry import BridgeState, ProgressRegistry, ProgressUpdate, RequestRegistry


def _update(token: str, progress: float) -> ProgressUpdate:
    return ProgressUpdate(progress_token=token, progress=progress, timestamp=datetime.now(UTC))


def test_progress_updates_accumulate_per_token() -> None:
    registry = ProgressRegistry()
    registry.record_progress("a", _update("a", 1))
    registry.record_progress("a", _update("a", 2))
    registry.record_progress("b", _update("b", 5))

    assert [update.progress for update in registry.get_progress("a")] == [1, 2]
    assert registry.get_progress("missing") == []

    registry.clear_progress("a")
    assert registry.get_progress("a") == []
    assert registry.tokens() == ["b"]


@pytest.mark.asyncio
async def test_cancel_runs_handler_and_forgets_request() -> None:
    registry = RequestRegistry()
    reasons: list[str | None] = []

    async def on_cancel(reason: str | None) -> None:
        reasons.append(reason)

    registry.track_request("req-1", "search", tool_name="find", on_cancel=on_cancel)
    assert [request.request_id for request in registry.active_requests()] == ["req-1"]

    assert await registry.cancel_request("req-1", "user abort")
    assert reasons == ["user abort"]
    assert registry.get("req-1") is None
    assert not await registry.cancel_request("req-1")


@pytest.mark.asyncio
async def test_cancel_of_unknown_request_is_false() -> None:
    assert not await RequestRegistry().cancel_request("nope")


@pytest.mark.asyncio
async def test_cancel_handler_failure_still_reports_success() -> None:
    registry = RequestRegistry()

    async def broken(reason: str | None) -> None:
        del reason
        msg = "connection gone"
        raise RuntimeError(msg)

    registry.track_request("req-2", "search", on_cancel=broken)

    assert await registry.cancel_request("req-2")
    assert registry.active_requests() == []


def test_untrack_request_is_idempotent() -> None:
    registry = RequestRegistry()
    registry.track_request("req-3", "docs")
    registry.untrack_request("req-3")
    registry.untrack_request("req-3")
    assert registry.active_requests() == []


@pytest.mark.asyncio
async def test_bridge_state_aclose_clears_registries() -> None:
    state = BridgeState()
    state.start()
    state.progress.record_progress("t", _update("t", 1))
    state.requests.track_request("r", "docs")

    await state.aclose()

    assert state.progress.tokens() == []
    assert state.requests.active_requests() == []
    assert not state.pool.sweeping
