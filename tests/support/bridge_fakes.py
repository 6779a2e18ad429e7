from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import anyio

from typing_extensions import TypeAliasType

from toolbridge.config import BridgeSettings
from toolbridge.mcp.models import TransportKind
from toolbridge.mcp.registry import BridgeState
from toolbridge.mcp.transport import TransportConnector

ToolHandler = TypeAliasType("ToolHandler", Callable[["FakeToolSession", str, dict[str, Any], Any], Awaitable[Any]])


class ModelPayload:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._payload = payload

    def model_dump(self, *, mode: str = "python", exclude_none: bool = False) -> dict[str, Any]:
        del mode, exclude_none
        return self._payload


def tool_def(
    name: str,
    properties: dict[str, Any] | None = None,
    required: list[str] | None = None,
    description: str | None = None,
) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    payload: dict[str, Any] = {"name": name, "inputSchema": schema}
    if description is not None:
        payload["description"] = description
    return payload


def text_result(text: str, *, is_error: bool = False) -> ModelPayload:
    return ModelPayload({"content": [{"type": "text", "text": text}], "isError": is_error})


async def echo_handler(
    session: FakeToolSession,
    name: str,
    arguments: dict[str, Any],
    progress_callback: Any,
) -> ModelPayload:
    del session, progress_callback
    return text_result(json.dumps({"tool": name, "arguments": arguments}))


@dataclass
class FakeServer:
    tools: list[dict[str, Any]] = field(default_factory=list)
    prompts: list[dict[str, Any]] | None = None
    prompt_messages: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    completions: dict[str, list[str]] | None = None
    handler: ToolHandler = echo_handler
    fail_transports: set[TransportKind] = field(default_factory=set)
    page_size: int | None = None
    list_tools_error: Exception | None = None
    list_tools_delay: float = 0.0


class FakeToolSession:
    def __init__(self, server: FakeServer, *, kind: TransportKind, headers: dict[str, str]) -> None:
        self.server = server
        self.kind = kind
        self.headers = headers
        self.initialized = False
        self.closed = False
        self.reading = False
        self.calls: list[tuple[str, dict[str, Any], timedelta | None]] = []
        self.notifications: list[Any] = []
        self.prompt_requests: list[tuple[str, dict[str, str] | None]] = []
        self.completion_requests: list[tuple[Any, dict[str, str], dict[str, str] | None]] = []

    async def read_stream(self) -> None:
        self.reading = True
        try:
            await anyio.sleep_forever()
        finally:
            self.reading = False

    async def initialize(self) -> ModelPayload:
        self.initialized = True
        return ModelPayload({"protocolVersion": "2025-06-18", "serverInfo": {"name": "fake"}})

    async def list_tools(self, cursor: str | None = None) -> ModelPayload:
        if self.server.list_tools_delay:
            await asyncio.sleep(self.server.list_tools_delay)
        if self.server.list_tools_error is not None:
            raise self.server.list_tools_error
        tools = self.server.tools
        size = self.server.page_size
        if size is None:
            return ModelPayload({"tools": tools})
        start = int(cursor or 0)
        page: dict[str, Any] = {"tools": tools[start : start + size]}
        if start + size < len(tools):
            page["nextCursor"] = str(start + size)
        return ModelPayload(page)

    async def list_prompts(self, cursor: str | None = None) -> ModelPayload:
        del cursor
        if self.server.prompts is None:
            msg = "Method not found"
            raise RuntimeError(msg)
        return ModelPayload({"prompts": self.server.prompts})

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
        progress_callback: Any | None = None,
    ) -> Any:
        self.calls.append((name, dict(arguments or {}), read_timeout_seconds))
        return await self.server.handler(self, name, dict(arguments or {}), progress_callback)

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> ModelPayload:
        self.prompt_requests.append((name, arguments))
        if name not in self.server.prompt_messages:
            msg = f"Unknown prompt: {name}"
            raise ValueError(msg)
        return ModelPayload(
            {"description": f"{name} prompt", "messages": self.server.prompt_messages[name]}
        )

    async def complete(
        self,
        ref: Any,
        argument: dict[str, str],
        context_arguments: dict[str, str] | None = None,
    ) -> ModelPayload:
        self.completion_requests.append((ref, argument, context_arguments))
        if self.server.completions is None:
            msg = "Method not found"
            raise RuntimeError(msg)
        candidates = self.server.completions.get(argument["name"], [])
        values = [value for value in candidates if value.startswith(argument["value"])]
        return ModelPayload(
            {"completion": {"values": values[:2], "total": len(values), "hasMore": len(values) > 2}}
        )

    async def send_notification(
        self,
        notification: Any,
        related_request_id: str | int | None = None,
    ) -> None:
        del related_request_id
        self.notifications.append(notification)


class FakeSessionFactory:
    def __init__(self, servers: Mapping[str, FakeServer]) -> None:
        self.servers = dict(servers)
        self.created = 0
        self.closed = 0
        self.attempts: list[tuple[TransportKind, str]] = []
        self.sessions: list[FakeToolSession] = []

    @asynccontextmanager
    async def __call__(self, kind: TransportKind, url: str, headers: Mapping[str, str]) -> Any:
        self.attempts.append((kind, url))
        server = self.servers.get(url)
        if server is None:
            msg = f"connect ECONNREFUSED {url}"
            raise ConnectionRefusedError(msg)
        if kind in server.fail_transports:
            msg = f"{kind.value} transport rejected"
            raise RuntimeError(msg)
        self.created += 1
        session = FakeToolSession(server, kind=kind, headers=dict(headers))
        self.sessions.append(session)
        # The SDK transports keep a reader running in a task group for the
        # lifetime of the session; exiting it from another task fails.
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(session.read_stream)
            try:
                yield session
            finally:
                task_group.cancel_scope.cancel()
                session.closed = True
                self.closed += 1

    def live_sessions(self) -> list[FakeToolSession]:
        return [session for session in self.sessions if not session.closed]


def make_state(
    servers: Mapping[str, FakeServer],
    **overrides: Any,
) -> tuple[BridgeState, FakeSessionFactory]:
    factory = FakeSessionFactory(servers)
    settings = BridgeSettings(**{"retry_base_delay_ms": 1, **overrides})
    connector = TransportConnector(
        session_factory=factory,
        connect_timeouts={TransportKind.HTTP: 1.0, TransportKind.SSE: 1.0},
        user_agent=settings.user_agent,
    )
    return BridgeState(settings=settings, connector=connector), factory
