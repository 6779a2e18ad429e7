"""Bridge sessions: aggregated catalog, resilient invocation and sandbox dispatch."""

from __future__ import annotations

import asyncio
import difflib
import logging
import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from typing_extensions import TypeAliasType

from toolbridge.codemode.validation import (
    adapt_args_for_schema,
    format_validation_error,
    generate_schema_summary,
    validate_tool_args,
)
from toolbridge.config import BridgeSettings
from toolbridge.mcp.catalog import (
    AcquiredConnection,
    AggregatedCatalog,
    CatalogAggregator,
    ServerEntry,
)
from toolbridge.mcp.models import (
    ErrorCode,
    JSONObject,
    ServerConfig,
    ToolInvocationError,
    dump_model,
)
from toolbridge.mcp.normalizer import ErrorInfo, InvocationResult, transform
from toolbridge.mcp.registry import BridgeState, ProgressUpdate
from toolbridge.mcp.retry import (
    RetryConfig,
    RetryResult,
    call_with_retry,
    format_retry_error,
    is_transient_error,
)
from toolbridge.mcp.transport import Connection

logger = logging.getLogger(__name__)

BRIDGE_PROTOCOL_VERSION = 1
REQUEST_TIMEOUT_CODE = 408

InvocationStatus = TypeAliasType("InvocationStatus", Literal["success", "error", "timeout"])
ResponseFormat = TypeAliasType("ResponseFormat", Literal["envelope", "raw"])


@dataclass(slots=True)
class ToolMetrics:
    """Running counters for one tool on one server."""

    server_key: str
    tool_name: str
    count: int = 0
    success: int = 0
    error: int = 0
    timeout: int = 0
    total_ms: float = 0.0
    last_ms: float | None = None
    last_status: InvocationStatus | None = None
    last_error: str | None = None
    last_invoked_at: datetime | None = None

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(
        self,
        status: InvocationStatus,
        duration_ms: float,
        error: str | None = None,
    ) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.last_ms = duration_ms
        self.last_status = status
        self.last_invoked_at = datetime.now(UTC)
        if status == "success":
            self.success += 1
        elif status == "timeout":
            self.timeout += 1
            self.last_error = error
        else:
            self.error += 1
            self.last_error = error

    def to_dict(self) -> JSONObject:
        return {
            "server": self.server_key,
            "tool": self.tool_name,
            "count": self.count,
            "success": self.success,
            "error": self.error,
            "timeout": self.timeout,
            "total_ms": round(self.total_ms, 3),
            "average_ms": round(self.average_ms, 3),
            "last_ms": None if self.last_ms is None else round(self.last_ms, 3),
            "last_status": self.last_status,
            "last_error": self.last_error,
            "last_invoked_at": (
                self.last_invoked_at.isoformat() if self.last_invoked_at is not None else None
            ),
        }


class ToolBridge:
    """One bridge session over an aggregated catalog.

    The session owns only the connections it opened itself. Connections reused
    from the pool stay there at cleanup so other sessions keep them.
    """

    def __init__(
        self,
        state: BridgeState,
        catalog: AggregatedCatalog,
        connections: Mapping[str, AcquiredConnection],
        *,
        acquired: Sequence[AcquiredConnection] = (),
        failures: Mapping[str, str] | None = None,
        aggregator: CatalogAggregator | None = None,
    ) -> None:
        self.state = state
        self.catalog = catalog
        self.failures = dict(failures or {})
        self._connections = dict(connections)
        self._acquired = list(acquired)
        self._aggregator = aggregator or CatalogAggregator(state)
        self._metrics: dict[tuple[str, str], ToolMetrics] = {}
        self._calls: dict[str, asyncio.Task[RetryResult]] = {}
        self._abort_watcher: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def settings(self) -> BridgeSettings:
        return self.state.settings

    @property
    def closed(self) -> bool:
        return self._closed

    def metrics(self) -> list[ToolMetrics]:
        """Per-tool counters, most recently invoked first."""
        return sorted(
            self._metrics.values(),
            key=lambda metric: metric.last_invoked_at or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )

    def connection_for(self, server_key: str) -> Connection | None:
        acquired = self._connections.get(server_key)
        return acquired.connection if acquired is not None else None

    async def invoke(
        self,
        server_key: str,
        tool_name: str,
        args: Mapping[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
        request_id: str | None = None,
    ) -> InvocationResult:
        """Call one tool and return its normalized envelope.

        Raises ``ToolInvocationError`` when the envelope reports a failure.
        """
        result = await self.call(
            server_key, tool_name, args, timeout_ms=timeout_ms, request_id=request_id
        )
        if not result.ok:
            raise _invocation_error(result, server_key, tool_name, args)
        return result

    async def call(
        self,
        server_key: str,
        tool_name: str,
        args: Mapping[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
        request_id: str | None = None,
        response_format: ResponseFormat = "envelope",
    ) -> InvocationResult:
        """Call one tool; failures come back as error envelopes instead of raising."""
        if self._closed:
            return InvocationResult.failure(ErrorCode.CONNECTION_ERROR, "Bridge session is closed")
        entry = self.catalog.get(server_key)
        if entry is None:
            return self._server_not_found(server_key)
        tool = entry.tools.get(tool_name)
        if tool is None:
            return self._tool_not_found(entry, tool_name)

        arguments = adapt_args_for_schema(args or {}, tool.input_schema)
        timeout = timeout_ms or entry.config.tool_timeout_ms or self.settings.tool_timeout_ms
        request_id = request_id or uuid.uuid4().hex
        started = time.perf_counter()

        task = asyncio.create_task(
            self._call_with_retry(entry, tool_name, arguments, timeout, request_id)
        )
        self._calls[request_id] = task

        async def on_cancel(reason: str | None) -> None:
            task.cancel()
            await self._send_cancelled(server_key, request_id, reason)

        self.state.requests.track_request(
            request_id, server_key, tool_name=tool_name, on_cancel=on_cancel
        )
        try:
            retry = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            result = InvocationResult.failure(
                ErrorCode.CANCELLED,
                f"Invocation of {server_key}/{tool_name} was cancelled",
                details={"request_id": request_id},
            )
            self._record(server_key, tool_name, "error", started, "cancelled")
            return result
        finally:
            self._calls.pop(request_id, None)
            self.state.requests.untrack_request(request_id)
            self.state.progress.clear_progress(request_id)

        if retry.ok:
            result = transform(retry.value, tool_name, args=arguments)
            # Errors are classified either way; only a success hands back the payload as is.
            if result.ok and response_format == "raw":
                result = InvocationResult.success(dump_model(retry.value))
        else:
            formatted = format_retry_error(retry)
            result = InvocationResult.failure(
                retry.error_code or ErrorCode.UNKNOWN_ERROR,
                retry.error or str(formatted["error"]),
                details={
                    "summary": formatted["error"],
                    "explanation": formatted["details"],
                    "recoverable": formatted["recoverable"],
                    "attempts": retry.attempts,
                    "total_time_ms": round(retry.total_time_ms, 3),
                },
            )

        if result.ok:
            self._record(server_key, tool_name, "success", started)
        else:
            error = result.error or ErrorInfo(ErrorCode.UNKNOWN_ERROR, "Tool execution failed")
            status: InvocationStatus = "timeout" if error.code == ErrorCode.TIMEOUT else "error"
            self._record(server_key, tool_name, status, started, error.message)
        return result

    async def _call_with_retry(
        self,
        entry: ServerEntry,
        tool_name: str,
        arguments: dict[str, Any],
        timeout_ms: int,
        request_id: str,
    ) -> RetryResult:
        from mcp.shared.exceptions import McpError

        async def on_progress(progress: float, total: float | None, message: str | None) -> None:
            self.state.progress.record_progress(
                request_id,
                ProgressUpdate(
                    progress_token=request_id,
                    progress=progress,
                    timestamp=datetime.now(UTC),
                    total=total,
                    message=message,
                ),
            )

        async def operation() -> Any:
            acquired = await self._live_connection(entry)
            connection = acquired.connection
            connection.active_calls += 1
            try:
                return await connection.session.call_tool(
                    tool_name,
                    arguments,
                    read_timeout_seconds=timedelta(milliseconds=timeout_ms),
                    progress_callback=on_progress,
                )
            except McpError as exc:
                if exc.error.code == REQUEST_TIMEOUT_CODE:
                    raise TimeoutError(exc.error.message) from exc
                return _mcp_error_payload(exc.error.code, exc.error.message)
            except Exception as exc:
                if is_transient_error(exc):
                    await self._aggregator.drop(acquired)
                raise
            finally:
                connection.active_calls -= 1
                connection.touch()

        retry_config = RetryConfig(
            max_retries=self.settings.max_retries,
            base_delay_ms=self.settings.retry_base_delay_ms,
            timeout_ms=timeout_ms,
        )
        return await call_with_retry(operation, retry_config)

    async def _live_connection(self, entry: ServerEntry) -> AcquiredConnection:
        acquired = self._connections.get(entry.key)
        if acquired is not None and not acquired.connection.closed:
            return acquired
        logger.info("Reconnecting to %s for server %s", entry.config.url, entry.key)
        replacement = await self._aggregator.acquire(entry.config)
        self._connections[entry.key] = replacement
        if replacement.fresh:
            self._acquired.append(replacement)
        return replacement

    def _record(
        self,
        server_key: str,
        tool_name: str,
        status: InvocationStatus,
        started: float,
        error: str | None = None,
    ) -> None:
        key = (server_key, tool_name)
        metric = self._metrics.get(key)
        if metric is None:
            metric = self._metrics[key] = ToolMetrics(server_key=server_key, tool_name=tool_name)
        duration_ms = (time.perf_counter() - started) * 1000
        metric.record(status, duration_ms, error)
        if status == "timeout":
            logger.warning("Tool %s/%s timed out after %.0fms", server_key, tool_name, duration_ms)
        else:
            logger.debug("Tool %s/%s %s in %.0fms", server_key, tool_name, status, duration_ms)

    async def _send_cancelled(
        self,
        server_key: str,
        request_id: str,
        reason: str | None,
    ) -> None:
        from mcp import types as mcp_types

        connection = self.connection_for(server_key)
        if connection is None or connection.closed:
            return
        notification = mcp_types.ClientNotification(
            mcp_types.CancelledNotification(
                method="notifications/cancelled",
                params=mcp_types.CancelledNotificationParams(requestId=request_id, reason=reason),
            )
        )
        await connection.session.send_notification(notification)

    async def cancel(self, request_id: str, reason: str | None = None) -> bool:
        """Cancel one in-flight invocation; ``False`` when the id is unknown."""
        return await self.state.requests.cancel_request(request_id, reason)

    async def dispatch(self, request: Mapping[str, Any]) -> JSONObject:
        """Answer one sandbox RPC request with an envelope dictionary.

        The request shape is ``{"version", "server", "tool", "args", "format"}``.
        Lookup, validation and invocation failures all come back as error
        envelopes so the sandbox never sees a host-side exception.
        """
        version = request.get("version", BRIDGE_PROTOCOL_VERSION)
        if version != BRIDGE_PROTOCOL_VERSION:
            return InvocationResult.failure(
                ErrorCode.UNSUPPORTED_VERSION,
                f"Unsupported helper protocol version {version!r}; "
                f"this host speaks version {BRIDGE_PROTOCOL_VERSION}",
            ).to_dict()

        server_key = request.get("server")
        tool_name = request.get("tool")
        args = request.get("args") or {}
        if not isinstance(server_key, str) or not isinstance(tool_name, str):
            return InvocationResult.failure(
                ErrorCode.INVALID_ARGUMENTS, "Request requires string 'server' and 'tool' fields"
            ).to_dict()
        if not isinstance(args, Mapping):
            return InvocationResult.failure(
                ErrorCode.INVALID_ARGUMENTS, "Tool arguments must be a JSON object"
            ).to_dict()
        response_format = request.get("format", "envelope")
        if response_format not in ("envelope", "raw"):
            response_format = "envelope"

        entry = self.catalog.get(server_key)
        if entry is None:
            return self._server_not_found(server_key).to_dict()
        tool = entry.tools.get(tool_name)
        if tool is None:
            return self._tool_not_found(entry, tool_name).to_dict()

        validation = validate_tool_args(args, tool.input_schema, tool_name)
        if not validation.valid:
            return InvocationResult.failure(
                ErrorCode.INVALID_ARGUMENTS,
                format_validation_error(validation, tool_name, server_key),
                details={
                    "schema": generate_schema_summary(tool.input_schema),
                    "errors": [issue.to_dict() for issue in validation.errors],
                },
                hints=validation.suggestions,
            ).to_dict()

        try:
            result = await self.call(
                server_key, tool_name, dict(args), response_format=response_format
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Dispatch of %s/%s failed", server_key, tool_name)
            message = str(exc) or type(exc).__name__
            result = InvocationResult.failure(ErrorCode.EXECUTION_ERROR, message)
        return result.to_dict()

    def _server_not_found(self, server_key: str) -> InvocationResult:
        available = sorted(self.catalog)
        suggestions = difflib.get_close_matches(server_key, available, n=3)
        message = f"Server '{server_key}' not found."
        if suggestions:
            message += f" Did you mean: {', '.join(suggestions)}?"
        message += f" Available servers: {', '.join(available) or '(none)'}"
        return InvocationResult.failure(
            ErrorCode.SERVER_NOT_FOUND,
            message,
            details={"available": list(available)},
            hints=[f"Use helpers.{name}" for name in suggestions],
        )

    def _tool_not_found(self, entry: ServerEntry, tool_name: str) -> InvocationResult:
        available = sorted(entry.tools)
        suggestions = difflib.get_close_matches(tool_name, available, n=3)
        message = f"Tool '{tool_name}' not found on server '{entry.key}'."
        if suggestions:
            message += f" Did you mean: {', '.join(suggestions)}?"
        message += f" Available tools: {', '.join(available) or '(none)'}"
        return InvocationResult.failure(
            ErrorCode.TOOL_NOT_FOUND,
            message,
            details={"available": list(available)},
            hints=[f'Did you mean "{name}"?' for name in suggestions],
        )

    def watch(self, abort_event: asyncio.Event) -> None:
        """Run cleanup once ``abort_event`` is set."""
        if self._abort_watcher is not None:
            return

        async def wait_for_abort() -> None:
            await abort_event.wait()
            logger.info("Abort signalled; tearing down bridge session")
            await self.cleanup()

        self._abort_watcher = asyncio.get_running_loop().create_task(wait_for_abort())

    async def cleanup(self) -> None:
        """Cancel in-flight calls and close connections this session opened."""
        if self._closed:
            return
        self._closed = True

        watcher = self._abort_watcher
        self._abort_watcher = None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()

        pending = list(self._calls.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        owned = [acquired for acquired in self._acquired if acquired.fresh]
        self._acquired.clear()
        self._connections.clear()
        for acquired in owned:
            await self._aggregator.drop(acquired)
        logger.debug("Bridge session closed %d connection(s)", len(owned))

    async def __aenter__(self) -> ToolBridge:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.cleanup()


async def initialize(
    server_configs: Sequence[ServerConfig | Mapping[str, Any]],
    abort_event: asyncio.Event | None = None,
    *,
    state: BridgeState | None = None,
    settings: BridgeSettings | None = None,
) -> ToolBridge:
    """Connect to every server and return a bridge session over what answered.

    Servers that fail to connect or list tools within the connect budget are
    left out of the catalog; this never raises for a single unreachable server.
    """
    bridge_state = state or BridgeState(settings=settings)
    bridge_state.start()
    configs = [
        config if isinstance(config, ServerConfig) else ServerConfig.from_dict(config)
        for config in server_configs
    ]
    aggregator = CatalogAggregator(bridge_state)
    result = await aggregator.aggregate(configs)
    bridge = ToolBridge(
        bridge_state,
        result.catalog,
        result.connections,
        acquired=result.acquired,
        failures=result.failures,
        aggregator=aggregator,
    )
    logger.info(
        "Bridge session ready: %d server(s), %d tool(s), %d failure(s)",
        len(result.catalog),
        sum(len(entry.tools) for entry in result.catalog.entries()),
        len(result.failures),
    )
    if abort_event is not None:
        if abort_event.is_set():
            await bridge.cleanup()
        else:
            bridge.watch(abort_event)
    return bridge


def _mcp_error_payload(code: int, message: str) -> JSONObject:
    return {"content": [{"type": "text", "text": f"MCP error {code}: {message}"}], "isError": True}


def _invocation_error(
    result: InvocationResult,
    server_key: str,
    tool_name: str,
    args: Mapping[str, Any] | None,
) -> ToolInvocationError:
    error = result.error or ErrorInfo(ErrorCode.UNKNOWN_ERROR, "Tool execution failed")
    return ToolInvocationError(
        error.message,
        code=error.code,
        tool_name=tool_name,
        server_key=server_key,
        args=dict(args or {}),
        hints=list(error.hints),
        details=error.details,
    )
