"""Progress and in-flight request registries plus the state container owning them."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from typing_extensions import TypeAliasType

from toolbridge.config import BridgeSettings
from toolbridge.mcp.models import TransportKind
from toolbridge.mcp.pool import ConnectionPool
from toolbridge.mcp.transport import TransportConnector

logger = logging.getLogger(__name__)

CancelHandler = TypeAliasType("CancelHandler", Callable[[str | None], Awaitable[None]])


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """One progress notification for a long-running call."""

    progress_token: str
    progress: float
    timestamp: datetime
    total: float | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class ActiveRequest:
    """In-flight invocation visible to the cancellation endpoint."""

    request_id: str
    server_key: str
    timestamp: datetime
    tool_name: str | None = None


class ProgressRegistry:
    """Append-only progress lists keyed by progress token."""

    def __init__(self) -> None:
        self._updates: dict[str, list[ProgressUpdate]] = {}

    def record_progress(self, token: str, update: ProgressUpdate) -> None:
        self._updates.setdefault(token, []).append(update)

    def get_progress(self, token: str) -> list[ProgressUpdate]:
        return list(self._updates.get(token, []))

    def clear_progress(self, token: str) -> None:
        self._updates.pop(token, None)

    def tokens(self) -> list[str]:
        return list(self._updates)

    def clear(self) -> None:
        self._updates.clear()


class RequestRegistry:
    """Presence map of in-flight requests and how to cancel them."""

    def __init__(self) -> None:
        self._active: dict[str, ActiveRequest] = {}
        self._cancel_handlers: dict[str, CancelHandler] = {}

    def track_request(
        self,
        request_id: str,
        server_key: str,
        *,
        tool_name: str | None = None,
        on_cancel: CancelHandler | None = None,
    ) -> ActiveRequest:
        request = ActiveRequest(
            request_id=request_id,
            server_key=server_key,
            timestamp=datetime.now(UTC),
            tool_name=tool_name,
        )
        self._active[request_id] = request
        if on_cancel is not None:
            self._cancel_handlers[request_id] = on_cancel
        return request

    def untrack_request(self, request_id: str) -> None:
        self._active.pop(request_id, None)
        self._cancel_handlers.pop(request_id, None)

    def get(self, request_id: str) -> ActiveRequest | None:
        return self._active.get(request_id)

    def active_requests(self) -> list[ActiveRequest]:
        return list(self._active.values())

    async def cancel_request(self, request_id: str, reason: str | None = None) -> bool:
        """Propagate cancellation to the owning session and forget the request.

        Returns ``False`` for unknown ids. Cancellation is best-effort: the
        remote server may keep working after the notification is sent.
        """
        request = self._active.pop(request_id, None)
        handler = self._cancel_handlers.pop(request_id, None)
        if request is None:
            return False
        if handler is not None:
            try:
                await handler(reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Cancellation of %s failed: %s", request_id, exc)
        return True

    def clear(self) -> None:
        self._active.clear()
        self._cancel_handlers.clear()


class BridgeState:
    """Process- or test-scoped owner of the pool, connector and registries."""

    def __init__(
        self,
        *,
        settings: BridgeSettings | None = None,
        connector: TransportConnector | None = None,
        pool: ConnectionPool | None = None,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.connector = connector or TransportConnector(
            connect_timeouts=_connect_timeouts(self.settings),
            user_agent=self.settings.user_agent,
        )
        self.pool = pool or ConnectionPool(
            idle_seconds=self.settings.pool_idle_seconds,
            sweep_seconds=self.settings.pool_sweep_seconds,
        )
        self.progress = ProgressRegistry()
        self.requests = RequestRegistry()

    def start(self) -> None:
        """Start background pool maintenance; requires a running event loop."""
        self.pool.start()

    async def aclose(self) -> None:
        await self.pool.close()
        self.progress.clear()
        self.requests.clear()


def _connect_timeouts(settings: BridgeSettings) -> dict[TransportKind, float]:
    return {
        TransportKind.HTTP: settings.connect_timeout_http_ms / 1000,
        TransportKind.SSE: settings.connect_timeout_sse_ms / 1000,
    }
