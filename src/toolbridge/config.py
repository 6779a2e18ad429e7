"""Tool bridge settings and explicit environment loading."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

from toolbridge.mcp.models import ServerConfig

DEFAULT_USER_AGENT = "claude-code/2.0"
DEFAULT_TOOL_TIMEOUT_MS = 30_000


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > minimum else default


def _env_servers(name: str) -> tuple[ServerConfig, ...]:
    raw = os.getenv(name)
    if not raw:
        return ()
    payload = json.loads(raw)
    if not isinstance(payload, list):
        msg = f"{name} must be a JSON list of server configurations"
        raise ValueError(msg)
    return tuple(ServerConfig.from_dict(item) for item in payload)


@dataclass(frozen=True, slots=True)
class BridgeSettings:
    """Explicit settings used by connectors, the pool and the HTTP surface."""

    tool_timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS
    connect_timeout_http_ms: int = 6_000
    connect_timeout_sse_ms: int = 8_000
    connect_budget_ms: int = 10_000
    pool_idle_seconds: float = 60.0
    pool_sweep_seconds: float = 30.0
    max_retries: int = 2
    retry_base_delay_ms: int = 500
    user_agent: str = DEFAULT_USER_AGENT
    proxy_token: str | None = None
    servers: tuple[ServerConfig, ...] = field(default_factory=tuple)
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> BridgeSettings:
        """Load settings from environment variables."""
        return BridgeSettings(
            tool_timeout_ms=_env_int(
                "TOOLBRIDGE_TOOL_TIMEOUT_MS", DEFAULT_TOOL_TIMEOUT_MS, minimum=1000
            ),
            connect_timeout_http_ms=_env_int("TOOLBRIDGE_CONNECT_TIMEOUT_HTTP_MS", 6_000),
            connect_timeout_sse_ms=_env_int("TOOLBRIDGE_CONNECT_TIMEOUT_SSE_MS", 8_000),
            connect_budget_ms=_env_int("TOOLBRIDGE_CONNECT_BUDGET_MS", 10_000),
            pool_idle_seconds=float(_env_int("TOOLBRIDGE_POOL_IDLE_SECONDS", 60)),
            pool_sweep_seconds=float(_env_int("TOOLBRIDGE_POOL_SWEEP_SECONDS", 30)),
            max_retries=_env_int("TOOLBRIDGE_MAX_RETRIES", 2, minimum=-1),
            retry_base_delay_ms=_env_int("TOOLBRIDGE_RETRY_BASE_DELAY_MS", 500),
            user_agent=os.getenv("TOOLBRIDGE_USER_AGENT", DEFAULT_USER_AGENT),
            proxy_token=os.getenv("TOOLBRIDGE_PROXY_TOKEN") or None,
            servers=_env_servers("TOOLBRIDGE_SERVERS"),
            log_level=os.getenv("TOOLBRIDGE_LOG_LEVEL", "INFO").upper(),
        )
