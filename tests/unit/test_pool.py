from __future__ import annotations

import pytest

from toolbridge.mcp.models import TransportKind
from toolbridge.mcp.pool import ConnectionPool, pool_key
from toolbridge.mcp.transport import Connection


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _connection(last_used_at: float = 1000.0) -> Connection:
    return Connection(
        session=object(),  # type: ignore[arg-type]
        transport=TransportKind.HTTP,
        url="https://tools.example.com/mcp",
        last_used_at=last_used_at,
    )


def test_pool_key_ignores_header_case_and_order() -> None:
    first = pool_key("https://a.example/mcp", {"Authorization": "x", "X-Team": "t"})
    second = pool_key("https://a.example/mcp", {"x-team": "t", "authorization": "x"})
    assert first == second


def test_pool_key_distinguishes_header_values_and_urls() -> None:
    base = pool_key("https://a.example/mcp", {"Authorization": "x"})
    assert base != pool_key("https://a.example/mcp", {"Authorization": "y"})
    assert base != pool_key("https://b.example/mcp", {"Authorization": "x"})


def test_get_touches_and_drops_closed_entries() -> None:
    clock = _Clock()
    pool = ConnectionPool(clock=clock)
    connection = _connection(last_used_at=10.0)
    pool.put("k", connection)

    clock.now = 55.0
    assert pool.get("k") is connection
    assert connection.last_used_at == 55.0

    connection.close_requested.set()
    assert pool.get("k") is None
    assert "k" not in pool


def test_put_returns_displaced_connection() -> None:
    pool = ConnectionPool()
    first = _connection()
    second = _connection()
    assert pool.put("k", first) is None
    assert pool.put("k", first) is None
    assert pool.put("k", second) is first


def test_discard_only_removes_matching_connection() -> None:
    pool = ConnectionPool()
    current = _connection()
    stale = _connection()
    pool.put("k", current)

    assert pool.discard("k", stale) is None
    assert "k" in pool
    assert pool.discard("k", current) is current
    assert len(pool) == 0


@pytest.mark.asyncio
async def test_sweep_evicts_idle_and_closed_but_keeps_busy() -> None:
    clock = _Clock()
    pool = ConnectionPool(idle_seconds=60.0, clock=clock)
    idle = _connection(last_used_at=900.0)
    busy = _connection(last_used_at=900.0)
    busy.active_calls = 1
    fresh = _connection(last_used_at=990.0)
    closed = _connection(last_used_at=999.0)
    closed.close_requested.set()
    for key, connection in {"idle": idle, "busy": busy, "fresh": fresh, "closed": closed}.items():
        pool.put(key, connection)

    evicted = await pool.sweep()

    assert sorted(evicted) == ["closed", "idle"]
    assert idle.closed
    assert not busy.closed
    assert sorted(pool.keys()) == ["busy", "fresh"]


@pytest.mark.asyncio
async def test_sweep_uses_strict_idle_threshold() -> None:
    pool = ConnectionPool(idle_seconds=60.0)
    connection = _connection(last_used_at=0.0)
    pool.put("k", connection)

    assert await pool.sweep(now=60.0) == []
    assert await pool.sweep(now=60.5) == ["k"]


@pytest.mark.asyncio
async def test_start_is_idempotent_and_close_stops_sweeper() -> None:
    pool = ConnectionPool(sweep_seconds=3600)
    connection = _connection()
    pool.put("k", connection)

    pool.start()
    pool.start()
    assert pool.sweeping

    await pool.close()
    assert not pool.sweeping
    assert connection.closed
    assert len(pool) == 0
