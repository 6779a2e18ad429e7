"""Readiness check for a single tool server."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from toolbridge.mcp.catalog import CatalogAggregator
from toolbridge.mcp.models import (
    ConnectionFailedError,
    HeaderInput,
    JSONObject,
    PromptDefinition,
    ServerConfig,
    ToolDefinition,
    TransportKind,
    normalize_headers,
)
from toolbridge.mcp.registry import BridgeState
from toolbridge.mcp.transport import transport_order

logger = logging.getLogger(__name__)

HEALTH_BUDGET_SECONDS = 8.0
TOOL_LIST_TIMEOUT_SECONDS = 5.0


@dataclass(slots=True)
class HealthReport:
    """Outcome of probing one server."""

    ready: bool
    transport: TransportKind | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    prompts: list[PromptDefinition] = field(default_factory=list)
    cached: bool = False
    connection_time_ms: float | None = None
    error: str | None = None
    transports_attempted: list[TransportKind] = field(default_factory=list)

    def to_dict(self) -> JSONObject:
        payload: JSONObject = {
            "ready": self.ready,
            "transport": self.transport.value if self.transport else None,
            "cached": self.cached,
            "connection_time_ms": (
                None if self.connection_time_ms is None else round(self.connection_time_ms, 1)
            ),
            "tool_count": len(self.tools),
            "tools": [tool.to_dict() for tool in self.tools],
            "prompts": [prompt.to_dict() for prompt in self.prompts],
        }
        if self.error is not None:
            payload["error"] = self.error
            payload["transports_attempted"] = [kind.value for kind in self.transports_attempted]
        return payload


async def check_server_health(
    url: str,
    headers: HeaderInput = None,
    transport_hint: str | TransportKind | None = None,
    *,
    state: BridgeState,
    budget_seconds: float = HEALTH_BUDGET_SECONDS,
    tool_list_timeout_seconds: float = TOOL_LIST_TIMEOUT_SECONDS,
) -> HealthReport:
    """Connect, list tools and (best effort) prompts within one overall budget.

    A healthy connection is left in the shared pool so that a session created
    right after the check reuses it.
    """
    hint = (
        transport_hint
        if isinstance(transport_hint, TransportKind)
        else TransportKind.parse(transport_hint)
    )
    config = ServerConfig(url=url, transport_hint=hint, headers=normalize_headers(headers))
    attempted = transport_order(hint)
    aggregator = CatalogAggregator(state, list_timeout_seconds=tool_list_timeout_seconds)
    started = time.perf_counter()

    def elapsed_ms() -> float:
        return (time.perf_counter() - started) * 1000

    budget = asyncio.timeout(budget_seconds)
    try:
        async with budget:
            entry, acquired = await aggregator.load_server(config)
    except ConnectionFailedError as exc:
        logger.info("Health check for %s failed: %s", url, exc)
        return _failed(str(exc), exc.transports_tried, elapsed_ms())
    except TimeoutError:
        if budget.expired():
            message = f"Health check timed out after {budget_seconds:g}s"
        else:
            message = f"Tools listing timed out after {tool_list_timeout_seconds:g}s"
        logger.info("Health check for %s failed: %s", url, message)
        return _failed(message, attempted, elapsed_ms())
    except Exception as exc:  # noqa: BLE001
        message = f"Tools listing failed: {_describe(exc)}"
        logger.info("Health check for %s failed: %s", url, message)
        return _failed(message, attempted, elapsed_ms())

    return HealthReport(
        ready=True,
        transport=entry.transport,
        tools=list(entry.tools.values()),
        prompts=list(entry.prompts),
        cached=not acquired.fresh,
        connection_time_ms=elapsed_ms(),
    )


def _failed(message: str, attempted: list[TransportKind], duration_ms: float) -> HealthReport:
    return HealthReport(
        ready=False,
        error=message,
        transports_attempted=list(attempted),
        connection_time_ms=duration_ms,
    )


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
