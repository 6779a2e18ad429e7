from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import ErrorData

from tests.support.bridge_fakes import (
    FakeServer,
    FakeSessionFactory,
    FakeToolSession,
    make_state,
    text_result,
    tool_def,
)
from toolbridge.mcp.bridge import ToolBridge, initialize
from toolbridge.mcp.models import ErrorCode, ServerConfig, ToolInvocationError
from toolbridge.mcp.registry import BridgeState

SEARCH_URL = "https://search.example.com/mcp/search"
DOCS_URL = "https://docs.example.com/mcp/docs"
FIND = tool_def(
    "find",
    {"query": {"type": "string"}, "limit": {"type": "integer"}},
    ["query"],
    "Find records. Supports paging.",
)


async def _until(predicate: Callable[[], bool]) -> None:
    async with asyncio.timeout(1):
        while not predicate():
            await asyncio.sleep(0.001)


async def _session(
    servers: dict[str, FakeServer],
    **overrides: Any,
) -> tuple[ToolBridge, BridgeState, FakeSessionFactory]:
    state, factory = make_state(servers, **overrides)
    bridge = await initialize([ServerConfig(url=url) for url in servers], state=state)
    return bridge, state, factory


@pytest.mark.asyncio
async def test_invoke_returns_normalized_data() -> None:
    bridge, state, factory = await _session({SEARCH_URL: FakeServer(tools=[FIND])})

    result = await bridge.invoke("search", "find", {"query": "cats"})

    assert result.ok
    assert result.data == {"tool": "find", "arguments": {"query": "cats"}}
    name, arguments, timeout = factory.sessions[0].calls[0]
    assert (name, arguments) == ("find", {"query": "cats"})
    assert timeout == timedelta(milliseconds=state.settings.tool_timeout_ms)
    await state.aclose()


@pytest.mark.asyncio
async def test_initialize_accepts_plain_dicts_and_server_timeouts() -> None:
    state, factory = make_state({SEARCH_URL: FakeServer(tools=[FIND])})
    bridge = await initialize(
        [{"url": SEARCH_URL, "name": "Finder", "tool_timeout_ms": 1500}], state=state
    )

    await bridge.invoke("finder", "find", {"query": "x"})

    assert factory.sessions[0].calls[0][2] == timedelta(milliseconds=1500)
    await state.aclose()


@pytest.mark.asyncio
async def test_invoke_raises_on_error_envelope() -> None:
    async def failing(
        session: FakeToolSession, name: str, arguments: dict[str, Any], progress: Any
    ) -> Any:
        del session, name, arguments, progress
        return text_result("Error: no such table: people")

    bridge, state, _ = await _session({SEARCH_URL: FakeServer(tools=[FIND], handler=failing)})

    with pytest.raises(ToolInvocationError) as exc_info:
        await bridge.invoke("search", "find", {"query": "x"})

    assert exc_info.value.code == ErrorCode.TABLE_NOT_FOUND
    assert exc_info.value.server_key == "search"
    assert exc_info.value.tool_args == {"query": "x"}
    await state.aclose()


@pytest.mark.asyncio
async def test_unknown_server_and_tool_are_reported_with_suggestions() -> None:
    bridge, state, _ = await _session({SEARCH_URL: FakeServer(tools=[FIND])})

    missing_server = await bridge.call("serch", "find")
    missing_tool = await bridge.call("search", "fnd")

    assert missing_server.error is not None
    assert missing_server.error.code == ErrorCode.SERVER_NOT_FOUND
    assert "Did you mean: search?" in missing_server.error.message
    assert missing_tool.error is not None
    assert missing_tool.error.code == ErrorCode.TOOL_NOT_FOUND
    assert missing_tool.error.details == {"available": ["find"]}
    await state.aclose()


@pytest.mark.asyncio
async def test_transient_failure_reconnects_and_retries() -> None:
    attempts = 0

    async def flaky(
        session: FakeToolSession, name: str, arguments: dict[str, Any], progress: Any
    ) -> Any:
        nonlocal attempts
        del session, progress
        attempts += 1
        if attempts == 1:
            msg = "read ECONNRESET"
            raise ConnectionResetError(msg)
        return text_result('{"rows": 3}')

    bridge, state, factory = await _session({SEARCH_URL: FakeServer(tools=[FIND], handler=flaky)})

    result = await bridge.call("search", "find", {"query": "x"})

    assert result.ok
    assert result.data == {"rows": 3}
    assert attempts == 2
    assert factory.created == 2
    assert factory.sessions[0].closed
    await bridge.cleanup()
    assert factory.live_sessions() == []
    await state.aclose()


@pytest.mark.asyncio
async def test_request_timeout_error_becomes_timeout_envelope() -> None:
    async def slow(
        session: FakeToolSession, name: str, arguments: dict[str, Any], progress: Any
    ) -> Any:
        del session, name, arguments, progress
        raise McpError(ErrorData(code=408, message="Timed out while waiting for response"))

    bridge, state, _ = await _session(
        {SEARCH_URL: FakeServer(tools=[FIND], handler=slow)}, max_retries=1
    )

    result = await bridge.call("search", "find", {"query": "x"})

    assert result.error is not None
    assert result.error.code == ErrorCode.TIMEOUT
    assert result.error.details is not None
    assert result.error.details["attempts"] == 2
    assert result.error.details["recoverable"] is True
    metric = bridge.metrics()[0]
    assert (metric.timeout, metric.count) == (1, 1)
    await state.aclose()


@pytest.mark.asyncio
async def test_protocol_error_is_reported_without_retry() -> None:
    async def invalid(
        session: FakeToolSession, name: str, arguments: dict[str, Any], progress: Any
    ) -> Any:
        del session, name, arguments, progress
        raise McpError(ErrorData(code=-32602, message="Invalid params"))

    bridge, state, factory = await _session(
        {SEARCH_URL: FakeServer(tools=[FIND], handler=invalid)}
    )

    result = await bridge.call("search", "find", {"query": "x"})

    assert not result.ok
    assert result.error is not None
    assert "MCP error -32602: Invalid params" in result.error.message
    assert len(factory.sessions[0].calls) == 1
    await state.aclose()


@pytest.mark.asyncio
async def test_progress_is_recorded_during_call_and_cleared_after() -> None:
    state_holder: list[BridgeState] = []
    seen: list[list[float]] = []

    async def reporting(
        session: FakeToolSession, name: str, arguments: dict[str, Any], progress: Any
    ) -> Any:
        del session, name, arguments
        await progress(1, 4, "started")
        await progress(2, 4, "halfway")
        updates = state_holder[0].progress.get_progress("req-progress")
        seen.append([update.progress for update in updates])
        return text_result('{"done": true}')

    bridge, state, _ = await _session({SEARCH_URL: FakeServer(tools=[FIND], handler=reporting)})
    state_holder.append(state)

    result = await bridge.call("search", "find", {"query": "x"}, request_id="req-progress")

    assert result.ok
    assert seen == [[1, 2]]
    assert state.progress.get_progress("req-progress") == []
    assert state.requests.get("req-progress") is None
    await state.aclose()


@pytest.mark.asyncio
async def test_cancel_stops_call_and_notifies_server() -> None:
    release = asyncio.Event()

    async def blocking(
        session: FakeToolSession, name: str, arguments: dict[str, Any], progress: Any
    ) -> Any:
        del session, name, arguments, progress
        await release.wait()
        return text_result("late")

    bridge, state, factory = await _session(
        {SEARCH_URL: FakeServer(tools=[FIND], handler=blocking)}
    )
    session = factory.sessions[0]
    pending = asyncio.create_task(
        bridge.call("search", "find", {"query": "x"}, request_id="req-cancel")
    )
    await _until(lambda: bool(session.calls))

    assert [request.request_id for request in state.requests.active_requests()] == ["req-cancel"]
    assert await bridge.cancel("req-cancel", "user abort")
    result = await pending

    assert result.error is not None
    assert result.error.code == ErrorCode.CANCELLED
    notification = session.notifications[0].root
    assert notification.method == "notifications/cancelled"
    assert notification.params.requestId == "req-cancel"
    assert notification.params.reason == "user abort"
    assert state.requests.active_requests() == []
    assert not await bridge.cancel("req-cancel")
    await state.aclose()


@pytest.mark.asyncio
async def test_metrics_track_success_and_failure_per_tool() -> None:
    bridge, state, _ = await _session(
        {
            SEARCH_URL: FakeServer(tools=[FIND]),
            DOCS_URL: FakeServer(tools=[tool_def("read")]),
        }
    )

    await bridge.call("search", "find", {"query": "x"})
    await bridge.call("search", "find", {"query": "y"})
    await bridge.call("docs", "read")

    metrics = {(metric.server_key, metric.tool_name): metric for metric in bridge.metrics()}
    assert metrics[("search", "find")].count == 2
    assert metrics[("search", "find")].success == 2
    assert metrics[("search", "find")].average_ms >= 0
    assert bridge.metrics()[0].tool_name == "read"
    assert metrics[("docs", "read")].to_dict()["last_status"] == "success"
    await state.aclose()


@pytest.mark.asyncio
async def test_dispatch_validates_before_calling() -> None:
    bridge, state, factory = await _session({SEARCH_URL: FakeServer(tools=[FIND])})

    envelope = await bridge.dispatch(
        {"version": 1, "server": "search", "tool": "find", "args": {"limits": 2}}
    )

    assert envelope["ok"] is False
    assert envelope["error"]["code"] == "INVALID_ARGUMENTS"
    assert envelope["error"]["details"]["schema"] == "{ query: string, limit?: integer }"
    assert 'Did you mean "limit" instead of "limits"?' in envelope["error"]["hints"]
    assert factory.sessions[0].calls == []
    await state.aclose()


@pytest.mark.asyncio
async def test_dispatch_rejects_malformed_requests() -> None:
    bridge, state, _ = await _session({SEARCH_URL: FakeServer(tools=[FIND])})

    wrong_version = await bridge.dispatch({"version": 2, "server": "search", "tool": "find"})
    no_tool = await bridge.dispatch({"version": 1, "server": "search"})
    bad_args = await bridge.dispatch(
        {"version": 1, "server": "search", "tool": "find", "args": [1]}
    )

    assert wrong_version["error"]["code"] == "UNSUPPORTED_VERSION"
    assert no_tool["error"]["code"] == "INVALID_ARGUMENTS"
    assert bad_args["error"]["message"] == "Tool arguments must be a JSON object"
    await state.aclose()


@pytest.mark.asyncio
async def test_dispatch_raw_format_returns_unnormalized_payload() -> None:
    bridge, state, _ = await _session({SEARCH_URL: FakeServer(tools=[FIND])})

    envelope = await bridge.dispatch(
        {"server": "search", "tool": "find", "args": {"query": "x"}, "format": "raw"}
    )

    assert envelope["ok"] is True
    assert envelope["data"]["content"][0]["type"] == "text"
    assert envelope["data"]["isError"] is False
    await state.aclose()


@pytest.mark.asyncio
async def test_dispatch_raw_format_still_classifies_errors() -> None:
    async def rejecting(
        session: FakeToolSession, name: str, arguments: dict[str, Any], progress: Any
    ) -> Any:
        del session, name, arguments, progress
        return text_result("Error: Invalid arguments")

    bridge, state, _ = await _session({SEARCH_URL: FakeServer(tools=[FIND], handler=rejecting)})

    envelope = await bridge.dispatch(
        {"server": "search", "tool": "find", "args": {"query": "x"}, "format": "raw"}
    )

    assert envelope["ok"] is False
    assert envelope["error"]["code"] == "INVALID_ARGUMENTS"
    assert bridge.metrics()[0].error == 1
    await state.aclose()


@pytest.mark.asyncio
async def test_cleanup_closes_only_connections_the_session_opened() -> None:
    state, factory = make_state(
        {
            SEARCH_URL: FakeServer(tools=[FIND]),
            DOCS_URL: FakeServer(tools=[tool_def("read")]),
        }
    )
    first = await initialize([ServerConfig(url=SEARCH_URL)], state=state)
    second = await initialize(
        [ServerConfig(url=SEARCH_URL), ServerConfig(url=DOCS_URL)], state=state
    )
    assert factory.created == 2

    await second.cleanup()
    await second.cleanup()

    assert factory.live_sessions() == [factory.sessions[0]]
    assert second.closed
    closed_call = await second.call("search", "find", {"query": "x"})
    assert closed_call.error is not None
    assert closed_call.error.message == "Bridge session is closed"

    await first.cleanup()
    assert factory.live_sessions() == []
    await state.aclose()


@pytest.mark.asyncio
async def test_abort_event_tears_down_session() -> None:
    state, factory = make_state({SEARCH_URL: FakeServer(tools=[FIND])})
    abort = asyncio.Event()
    bridge = await initialize([ServerConfig(url=SEARCH_URL)], abort, state=state)
    assert not bridge.closed

    abort.set()
    await _until(lambda: bridge.closed and not factory.live_sessions())
    await state.aclose()


@pytest.mark.asyncio
async def test_already_aborted_session_is_closed_immediately() -> None:
    state, factory = make_state({SEARCH_URL: FakeServer(tools=[FIND])})
    abort = asyncio.Event()
    abort.set()

    bridge = await initialize([ServerConfig(url=SEARCH_URL)], abort, state=state)

    assert bridge.closed
    assert factory.live_sessions() == []
    await state.aclose()


@pytest.mark.asyncio
async def test_session_context_manager_cleans_up() -> None:
    state, factory = make_state({SEARCH_URL: FakeServer(tools=[FIND])})

    async with await initialize([ServerConfig(url=SEARCH_URL)], state=state) as bridge:
        assert "search" in bridge.catalog

    assert factory.live_sessions() == []
    await state.aclose()


@pytest.mark.asyncio
async def test_teardown_stops_transports_opened_during_concurrent_aggregation() -> None:
    state, factory = make_state(
        {
            SEARCH_URL: FakeServer(tools=[FIND]),
            DOCS_URL: FakeServer(tools=[tool_def("read")]),
        }
    )
    bridge = await initialize(
        [ServerConfig(url=SEARCH_URL), ServerConfig(url=DOCS_URL)], state=state
    )
    assert all(session.reading for session in factory.sessions)

    await bridge.cleanup()

    assert factory.closed == 2
    assert not any(session.reading for session in factory.sessions)
    await state.aclose()


@pytest.mark.asyncio
async def test_unreachable_server_is_left_out() -> None:
    state, _ = make_state({SEARCH_URL: FakeServer(tools=[FIND])})

    bridge = await initialize(
        [ServerConfig(url=SEARCH_URL), ServerConfig(url="https://gone.example.com/mcp/gone")],
        state=state,
    )

    assert list(bridge.catalog) == ["search"]
    assert "https://gone.example.com/mcp/gone" in bridge.failures
    await state.aclose()
