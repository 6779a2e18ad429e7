"""Keyed cache of live tool-server connections with idle reaping."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping

from toolbridge.mcp.transport import Connection, close_quietly

logger = logging.getLogger(__name__)


def pool_key(url: str, headers: Mapping[str, str]) -> str:
    """Build the pool key for one target.

    Header names are case-insensitive on the wire, so they are lowercased and
    sorted before serialization. Header values are compared verbatim.
    """
    canonical = sorted((name.lower(), value) for name, value in headers.items())
    return url + json.dumps(canonical, separators=(",", ":"))


class ConnectionPool:
    """Connection cache reused across bridge sessions."""

    def __init__(
        self,
        *,
        idle_seconds: float = 60.0,
        sweep_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[str, Connection] = {}
        self._idle_seconds = idle_seconds
        self._sweep_seconds = sweep_seconds
        self._clock = clock
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> Connection | None:
        """Return a live pooled connection and mark it used, or ``None``."""
        connection = self._entries.get(key)
        if connection is None:
            return None
        if connection.closed:
            self._entries.pop(key, None)
            return None
        connection.touch(self._clock())
        return connection

    def put(self, key: str, connection: Connection) -> Connection | None:
        """Store a connection; returns the displaced one so the caller can close it."""
        previous = self._entries.get(key)
        self._entries[key] = connection
        if previous is connection:
            return None
        return previous

    def discard(self, key: str, connection: Connection | None = None) -> Connection | None:
        """Remove an entry; with ``connection`` given, only if it is still the pooled one."""
        current = self._entries.get(key)
        if current is None or (connection is not None and current is not connection):
            return None
        return self._entries.pop(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    async def sweep(self, now: float | None = None) -> list[str]:
        """Close and evict connections idle beyond the threshold."""
        current = self._clock() if now is None else now
        evicted: list[str] = []
        for key, connection in list(self._entries.items()):
            if connection.active_calls > 0:
                continue
            if not connection.closed and current - connection.last_used_at <= self._idle_seconds:
                continue
            if self._entries.get(key) is connection:
                del self._entries[key]
            evicted.append(key)
            await close_quietly(connection)
        if evicted:
            logger.debug("Evicted %d idle connection(s)", len(evicted))
        return evicted

    def start(self) -> None:
        """Start the periodic sweep on the running loop, once."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._run_sweeper())

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_seconds)
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("Connection sweep failed")

    async def close(self) -> None:
        """Stop the sweeper and close every pooled connection."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        entries = list(self._entries.values())
        self._entries.clear()
        for connection in entries:
            await close_quietly(connection)
