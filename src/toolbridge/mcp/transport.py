"""Transport negotiation for remote tool servers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol, cast

from toolbridge.config import DEFAULT_USER_AGENT
from toolbridge.mcp.models import ConnectionFailedError, ServerConfig, TransportKind

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUTS: dict[TransportKind, float] = {
    TransportKind.HTTP: 6.0,
    TransportKind.SSE: 8.0,
}


class ToolSession(Protocol):
    """Minimal MCP SDK client session surface used by the bridge."""

    async def initialize(self) -> Any:
        """Run MCP initialize handshake."""

    async def list_tools(self, cursor: str | None = None) -> Any:
        """List one page of tools advertised by the server."""

    async def list_prompts(self, cursor: str | None = None) -> Any:
        """List prompt templates advertised by the server."""

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
        progress_callback: Any | None = None,
    ) -> Any:
        """Call one tool."""

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> Any:
        """Render one prompt template."""

    async def complete(
        self,
        ref: Any,
        argument: dict[str, str],
        context_arguments: dict[str, str] | None = None,
    ) -> Any:
        """Ask for completion values of one argument."""

    async def send_notification(
        self,
        notification: Any,
        related_request_id: str | int | None = None,
    ) -> None:
        """Send one MCP notification."""


class SessionFactory(Protocol):
    """Factory for transport-bound MCP session contexts."""

    def __call__(
        self,
        kind: TransportKind,
        url: str,
        headers: Mapping[str, str],
    ) -> AbstractAsyncContextManager[ToolSession]:
        """Return async context manager for one server session."""


@dataclass(slots=True, eq=False)
class Connection:
    """Live, initialized session owned by the connection pool.

    The MCP SDK transports run anyio task groups, which must be exited by the
    task that entered them. ``owner`` is that task: it holds the session open
    until ``aclose`` asks it to leave the contexts.
    """

    session: ToolSession
    transport: TransportKind
    url: str
    last_used_at: float
    owner: asyncio.Task[None] | None = None
    active_calls: int = 0
    close_requested: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def closed(self) -> bool:
        if self.close_requested.is_set():
            return True
        return self.owner is not None and self.owner.done()

    def touch(self, now: float | None = None) -> None:
        self.last_used_at = time.monotonic() if now is None else now

    async def aclose(self) -> None:
        """Ask the owner task to close the session and wait until it has."""
        if self.close_requested.is_set():
            return
        self.close_requested.set()
        if self.owner is not None:
            await self.owner


def transport_order(hint: TransportKind) -> list[TransportKind]:
    """Return the hinted transport first, then the other one."""
    if hint is TransportKind.SSE:
        return [TransportKind.SSE, TransportKind.HTTP]
    return [TransportKind.HTTP, TransportKind.SSE]


def with_default_user_agent(
    headers: Mapping[str, str],
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, str]:
    """Copy headers, adding a User-Agent unless one is already present."""
    merged = dict(headers)
    if not any(key.lower() == "user-agent" for key in merged):
        merged["User-Agent"] = user_agent
    return merged


@asynccontextmanager
async def open_mcp_session(
    kind: TransportKind,
    url: str,
    headers: Mapping[str, str],
    *,
    timeout_seconds: float = 30.0,
) -> AsyncIterator[ToolSession]:
    """Open one MCP SDK client session over the requested transport."""
    from mcp.client.session import ClientSession

    if kind is TransportKind.SSE:
        from mcp.client.sse import sse_client

        async with sse_client(url, headers=dict(headers), timeout=timeout_seconds) as (read, write):
            async with ClientSession(read, write) as session:
                yield cast(ToolSession, session)
        return

    from mcp.client.streamable_http import streamablehttp_client

    timeout = timedelta(seconds=timeout_seconds)
    async with streamablehttp_client(url=url, headers=dict(headers), timeout=timeout) as (
        read,
        write,
        _,
    ):
        async with ClientSession(read, write) as session:
            yield cast(ToolSession, session)


class TransportConnector:
    """Open connections with ordered transport fallback, one pass per transport."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        connect_timeouts: Mapping[TransportKind, float] | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory or open_mcp_session
        self._connect_timeouts = dict(DEFAULT_CONNECT_TIMEOUTS)
        if connect_timeouts:
            self._connect_timeouts.update(connect_timeouts)
        self._user_agent = user_agent
        self._clock = clock

    def request_headers(self, config: ServerConfig) -> dict[str, str]:
        return with_default_user_agent(config.headers, self._user_agent)

    async def connect(self, config: ServerConfig) -> Connection:
        """Return an initialized connection or raise ``ConnectionFailedError``."""
        headers = self.request_headers(config)
        order = transport_order(config.transport_hint)
        failures: dict[str, str] = {}
        for kind in order:
            loop = asyncio.get_running_loop()
            ready: asyncio.Future[ToolSession] = loop.create_future()
            close_requested = asyncio.Event()
            owner = loop.create_task(
                self._hold_session(kind, config.url, headers, ready, close_requested),
                name=f"mcp-session {kind.value} {config.url}",
            )
            try:
                async with asyncio.timeout(self._connect_timeouts[kind]):
                    session = await ready
            except Exception as exc:  # noqa: BLE001
                failures[kind.value] = _describe(exc)
                logger.debug(
                    "Transport %s failed for %s: %s", kind, config.url, failures[kind.value]
                )
                await _abandon(owner)
                continue
            except BaseException:
                await _abandon(owner)
                raise
            owner.add_done_callback(_log_owner_exit)
            logger.debug("Connected to %s over %s", config.url, kind)
            return Connection(
                session=session,
                transport=kind,
                url=config.url,
                last_used_at=self._clock(),
                owner=owner,
                close_requested=close_requested,
            )

        tried = " -> ".join(kind.value for kind in order)
        reasons = "; ".join(f"{name}: {reason}" for name, reason in failures.items())
        msg = f"Connection failed ({tried}): {reasons}"
        raise ConnectionFailedError(
            msg,
            url=config.url,
            transports_tried=order,
            failures=failures,
        )

    async def _hold_session(
        self,
        kind: TransportKind,
        url: str,
        headers: Mapping[str, str],
        ready: asyncio.Future[ToolSession],
        close_requested: asyncio.Event,
    ) -> None:
        """Enter the session contexts, hand the session over, and exit them on request."""
        try:
            async with self._session_factory(kind, url, headers) as session:
                await session.initialize()
                if ready.done():
                    return
                ready.set_result(session)
                await close_requested.wait()
        except Exception as exc:
            if ready.done():
                raise
            ready.set_exception(exc)


async def _abandon(owner: asyncio.Task[None]) -> None:
    """Cancel a session owner that never produced a usable connection."""
    owner.cancel()
    await asyncio.wait([owner])
    if not owner.cancelled() and owner.exception() is not None:
        logger.debug("Abandoned session ended with: %s", _describe(owner.exception()))


def _log_owner_exit(owner: asyncio.Task[None]) -> None:
    if owner.cancelled():
        return
    exc = owner.exception()
    if exc is not None:
        logger.debug("Session %s ended with: %s", owner.get_name(), _describe(exc))


async def close_quietly(connection: Connection) -> None:
    """Close a connection, logging instead of raising on failure."""
    try:
        await connection.aclose()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Ignoring close failure: %s", _describe(exc))


def _describe(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "connect timed out"
    if isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        return _describe(exc.exceptions[0])
    return str(exc) or type(exc).__name__
