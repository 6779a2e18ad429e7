"""Aggregate tools and prompts across servers under sanitized server keys."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from toolbridge.codemode.validation import ensure_object_schema
from toolbridge.mcp.models import (
    JSONObject,
    PromptArgument,
    PromptDefinition,
    ServerConfig,
    ToolDefinition,
    TransportKind,
    dump_model,
)
from toolbridge.mcp.pool import pool_key
from toolbridge.mcp.registry import BridgeState
from toolbridge.mcp.transport import Connection, close_quietly

logger = logging.getLogger(__name__)

FALLBACK_SERVER_KEY = "mcp"
PROMPT_LIST_TIMEOUT_SECONDS = 4.0
_MAX_PAGES = 50
_UNSAFE_KEY_CHARS = re.compile(r"[^a-z0-9]")


def sanitize_key(value: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("", value.lower())


def extract_server_key(config: ServerConfig) -> str:
    """Derive the identifier a server is exposed under.

    Preference order: explicit name, last URL path segment, first subdomain
    label (hosts with more than two labels), full hostname, then ``"mcp"``.
    """
    if config.name:
        key = sanitize_key(config.name)
        if key:
            return key

    try:
        parts = urlsplit(config.url)
        hostname = parts.hostname or ""
    except ValueError:
        return FALLBACK_SERVER_KEY

    segments = [segment for segment in parts.path.split("/") if segment]
    if segments:
        key = sanitize_key(segments[-1])
        if key:
            return key

    labels = [label for label in hostname.split(".") if label]
    if len(labels) > 2:
        key = sanitize_key(labels[0])
        if key:
            return key

    key = sanitize_key(hostname)
    return key or FALLBACK_SERVER_KEY


def config_identity(config: ServerConfig) -> tuple[Any, ...]:
    """Configurations with the same identity connect only once per session."""
    headers = tuple(sorted((name.lower(), value) for name, value in config.headers.items()))
    return (config.transport_hint, config.url, headers, config.tool_timeout_ms)


@dataclass(slots=True)
class ServerEntry:
    """Tools and prompts exposed by one connected server."""

    key: str
    config: ServerConfig
    tools: dict[str, ToolDefinition] = field(default_factory=dict)
    prompts: list[PromptDefinition] = field(default_factory=list)
    transport: TransportKind | None = None

    def to_dict(self) -> JSONObject:
        return {
            "key": self.key,
            "name": self.config.name,
            "url": self.config.url,
            "transport": self.transport.value if self.transport else None,
            "tools": [tool.to_dict() for tool in self.tools.values()],
            "prompts": [prompt.to_dict() for prompt in self.prompts],
        }


class AggregatedCatalog:
    """Merged tool/prompt namespace keyed by server key."""

    def __init__(self) -> None:
        self._servers: dict[str, ServerEntry] = {}

    def register(self, entry: ServerEntry) -> ServerEntry | None:
        """Add a server entry; a key collision replaces the earlier entry."""
        previous = self._servers.get(entry.key)
        if previous is not None:
            logger.warning(
                "Server key %r from %s replaces tools from %s",
                entry.key,
                entry.config.url,
                previous.config.url,
            )
        self._servers[entry.key] = entry
        return previous

    def __contains__(self, key: object) -> bool:
        return key in self._servers

    def __getitem__(self, key: str) -> ServerEntry:
        return self._servers[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._servers)

    def __len__(self) -> int:
        return len(self._servers)

    def get(self, key: str) -> ServerEntry | None:
        return self._servers.get(key)

    def entries(self) -> list[ServerEntry]:
        return list(self._servers.values())

    def tool(self, server_key: str, tool_name: str) -> ToolDefinition | None:
        entry = self._servers.get(server_key)
        if entry is None:
            return None
        return entry.tools.get(tool_name)

    def to_dict(self) -> JSONObject:
        return {key: entry.to_dict() for key, entry in self._servers.items()}


def parse_tools(listing: Any) -> dict[str, ToolDefinition]:
    payload = dump_model(listing)
    raw_tools = payload.get("tools") if isinstance(payload, dict) else None
    tools: dict[str, ToolDefinition] = {}
    for raw in raw_tools or []:
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
            continue
        description = raw.get("description")
        tools[raw["name"]] = ToolDefinition(
            name=raw["name"],
            description=description if isinstance(description, str) else None,
            input_schema=ensure_object_schema(raw.get("inputSchema")),
        )
    return tools


def parse_prompts(listing: Any) -> list[PromptDefinition]:
    payload = dump_model(listing)
    raw_prompts = payload.get("prompts") if isinstance(payload, dict) else None
    prompts: list[PromptDefinition] = []
    for raw in raw_prompts or []:
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
            continue
        arguments = tuple(
            PromptArgument(
                name=str(argument["name"]),
                description=argument.get("description"),
                required=bool(argument.get("required", False)),
            )
            for argument in raw.get("arguments") or []
            if isinstance(argument, dict) and argument.get("name")
        )
        prompts.append(
            PromptDefinition(
                name=raw["name"],
                title=raw.get("title"),
                description=raw.get("description"),
                arguments=arguments,
            )
        )
    return prompts


async def list_all_tools(connection: Connection) -> dict[str, ToolDefinition]:
    """Collect every page of the server's tool listing."""
    tools: dict[str, ToolDefinition] = {}
    cursor: str | None = None
    for _ in range(_MAX_PAGES):
        listing = await connection.session.list_tools(cursor=cursor)
        tools.update(parse_tools(listing))
        payload = dump_model(listing)
        cursor = payload.get("nextCursor") if isinstance(payload, dict) else None
        if not cursor:
            break
    return tools


async def list_prompts_best_effort(
    connection: Connection,
    *,
    timeout_seconds: float = PROMPT_LIST_TIMEOUT_SECONDS,
) -> list[PromptDefinition]:
    """List prompts; servers without prompt support yield an empty list."""
    try:
        async with asyncio.timeout(timeout_seconds):
            listing = await connection.session.list_prompts()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Prompt listing unavailable for %s: %s", connection.url, exc)
        return []
    return parse_prompts(listing)


@dataclass(slots=True)
class AcquiredConnection:
    """Connection handed to one session, with ownership flag."""

    pool_key: str
    connection: Connection
    fresh: bool


@dataclass(slots=True)
class AggregationResult:
    """Catalog plus the connections backing it."""

    catalog: AggregatedCatalog
    connections: dict[str, AcquiredConnection] = field(default_factory=dict)
    acquired: list[AcquiredConnection] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


class CatalogAggregator:
    """Connect to many servers concurrently and merge what they expose."""

    def __init__(
        self,
        state: BridgeState,
        *,
        budget_seconds: float | None = None,
        list_timeout_seconds: float | None = None,
    ) -> None:
        self._state = state
        self._list_timeout_seconds = list_timeout_seconds
        if budget_seconds is None:
            budget_seconds = state.settings.connect_budget_ms / 1000
        self._budget_seconds = budget_seconds

    async def acquire(self, config: ServerConfig) -> AcquiredConnection:
        """Reuse a pooled connection for the target or open a new one."""
        headers = self._state.connector.request_headers(config)
        key = pool_key(config.url, headers)
        pooled = self._state.pool.get(key)
        if pooled is not None:
            return AcquiredConnection(pool_key=key, connection=pooled, fresh=False)

        connection = await self._state.connector.connect(config)
        raced = self._state.pool.get(key)
        if raced is not None:
            await close_quietly(connection)
            return AcquiredConnection(pool_key=key, connection=raced, fresh=False)
        self._state.pool.put(key, connection)
        return AcquiredConnection(pool_key=key, connection=connection, fresh=True)

    async def drop(self, acquired: AcquiredConnection) -> None:
        """Evict and close one acquired connection."""
        self._state.pool.discard(acquired.pool_key, acquired.connection)
        await close_quietly(acquired.connection)

    async def _list_tools(self, acquired: AcquiredConnection) -> dict[str, ToolDefinition]:
        async with asyncio.timeout(self._list_timeout_seconds):
            return await list_all_tools(acquired.connection)

    async def load_server(self, config: ServerConfig) -> tuple[ServerEntry, AcquiredConnection]:
        acquired = await self.acquire(config)
        try:
            tools = await self._list_tools(acquired)
        except Exception:
            await self.drop(acquired)
            if acquired.fresh:
                raise
            logger.debug("Pooled connection to %s is stale; reconnecting", config.url)
            acquired = await self.acquire(config)
            try:
                tools = await self._list_tools(acquired)
            except BaseException:
                await self.drop(acquired)
                raise
        except BaseException:
            if acquired.fresh:
                await self.drop(acquired)
            raise
        connection = acquired.connection
        prompts = await list_prompts_best_effort(connection)

        connection.touch()
        entry = ServerEntry(
            key=extract_server_key(config),
            config=config,
            tools=tools,
            prompts=prompts,
            transport=connection.transport,
        )
        return entry, acquired

    async def aggregate(self, configs: Sequence[ServerConfig]) -> AggregationResult:
        """Connect to every server at once; failed servers are left out."""
        unique: list[ServerConfig] = []
        seen: set[tuple[Any, ...]] = set()
        for config in configs:
            identity = config_identity(config)
            if identity not in seen:
                seen.add(identity)
                unique.append(config)

        result = AggregationResult(catalog=AggregatedCatalog())
        if not unique:
            return result

        tasks = [asyncio.create_task(self.load_server(config)) for config in unique]
        _, pending = await asyncio.wait(tasks, timeout=self._budget_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for config, task in zip(unique, tasks, strict=True):
            if task.cancelled():
                result.failures[config.url] = "connect budget exceeded"
                logger.warning("Skipping %s: connect budget exceeded", config.url)
                continue
            exc = task.exception()
            if exc is not None:
                result.failures[config.url] = str(exc) or type(exc).__name__
                logger.warning("Skipping %s: %s", config.url, result.failures[config.url])
                continue
            entry, acquired = task.result()
            result.acquired.append(acquired)
            result.catalog.register(entry)
            result.connections[entry.key] = acquired
        return result
