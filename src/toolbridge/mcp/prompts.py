"""Resolve remote prompt templates and complete their arguments."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from toolbridge.mcp.models import (
    HeaderInput,
    JSONObject,
    ServerConfig,
    TransportKind,
    dump_model,
    normalize_headers,
)
from toolbridge.mcp.registry import BridgeState
from toolbridge.mcp.transport import close_quietly

logger = logging.getLogger(__name__)

PROMPT_TIMEOUT_SECONDS = 7.0


@dataclass(frozen=True, slots=True)
class PromptMessage:
    """One rendered prompt message."""

    role: str
    text: str
    content: tuple[JSONObject, ...] = ()

    def to_dict(self) -> JSONObject:
        return {"role": self.role, "text": self.text, "content": list(self.content)}


@dataclass(slots=True)
class PromptResolution:
    """Messages of a resolved prompt, or the reason resolution failed."""

    messages: list[PromptMessage] = field(default_factory=list)
    description: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> JSONObject:
        payload: JSONObject = {
            "messages": [message.to_dict() for message in self.messages],
            "description": self.description,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


def render_content(item: Any) -> str:
    """Text stand-in for one content block."""
    if not isinstance(item, Mapping):
        return ""
    kind = item.get("type")
    if kind == "text":
        return str(item.get("text") or "")
    if kind == "resource":
        resource = item.get("resource")
        uri = resource.get("uri") if isinstance(resource, Mapping) else None
        return f"[resource {uri}]" if uri else "[resource]"
    if kind in ("image", "audio"):
        if item.get("data"):
            return f"[{kind} inline]"
        if item.get("url"):
            return f"[{kind} {item['url']}]"
        return f"[{kind}]"
    if kind == "file":
        return f"[file {item['path']}]" if item.get("path") else "[file]"
    if kind == "tool_result":
        result = item.get("result")
        if isinstance(result, Mapping):
            return f"[tool {result.get('name') or 'result'}]"
        return "[tool]"
    return f"[{kind or 'content'}]"


def _content_blocks(content: Any) -> list[JSONObject]:
    if isinstance(content, list):
        return [dict(block) for block in content if isinstance(block, Mapping)]
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    if isinstance(content, Mapping) and content.get("type"):
        return [dict(content)]
    return []


def normalize_prompt_messages(messages: Any) -> list[PromptMessage]:
    if not isinstance(messages, list):
        return []
    normalized: list[PromptMessage] = []
    for message in messages:
        if not isinstance(message, Mapping):
            continue
        blocks = _content_blocks(message.get("content"))
        text = "\n".join(rendered for rendered in map(render_content, blocks) if rendered)
        normalized.append(
            PromptMessage(role=str(message.get("role") or "user"), text=text, content=tuple(blocks))
        )
    return normalized


def coerce_prompt_args(args: Mapping[str, Any] | None) -> dict[str, str]:
    """Prompt arguments travel as strings; ``None`` becomes empty."""
    if not args:
        return {}
    return {str(key): "" if value is None else str(value) for key, value in args.items() if key}


async def resolve_prompt(
    url: str,
    transport: str | TransportKind | None,
    name: str,
    headers: HeaderInput = None,
    args: Mapping[str, Any] | None = None,
    *,
    state: BridgeState,
    timeout_seconds: float = PROMPT_TIMEOUT_SECONDS,
) -> PromptResolution:
    """Connect, run ``prompts/get`` under a deadline, and close the connection.

    Failures are reported in ``PromptResolution.error`` instead of raising.
    """
    hint = transport if isinstance(transport, TransportKind) else TransportKind.parse(transport)
    config = ServerConfig(url=url, transport_hint=hint, headers=normalize_headers(headers))
    try:
        connection = await state.connector.connect(config)
    except Exception as exc:  # noqa: BLE001
        logger.info("Prompt %s unavailable from %s: %s", name, url, exc)
        return PromptResolution(error=str(exc) or type(exc).__name__)

    try:
        async with asyncio.timeout(timeout_seconds):
            result = await connection.session.get_prompt(name, coerce_prompt_args(args))
    except TimeoutError:
        return PromptResolution(error=f"prompts/get timed out after {timeout_seconds:g}s")
    except Exception as exc:  # noqa: BLE001
        logger.info("prompts/get %s failed on %s: %s", name, url, exc)
        return PromptResolution(error=str(exc) or "prompts/get not supported")
    finally:
        await close_quietly(connection)

    payload = dump_model(result)
    if not isinstance(payload, Mapping):
        return PromptResolution()
    description = payload.get("description")
    return PromptResolution(
        messages=normalize_prompt_messages(payload.get("messages")),
        description=description if isinstance(description, str) else None,
    )


@dataclass(slots=True)
class PromptCompletion:
    """Suggested values for one prompt argument."""

    values: list[str] = field(default_factory=list)
    has_more: bool = False
    total: int | None = None
    error: str | None = None

    def to_dict(self) -> JSONObject:
        payload: JSONObject = {"values": self.values, "hasMore": self.has_more, "total": self.total}
        if self.error is not None:
            payload["error"] = self.error
        return payload


def _completion_from(payload: Any) -> PromptCompletion:
    completion = payload.get("completion") if isinstance(payload, Mapping) else None
    if not isinstance(completion, Mapping):
        return PromptCompletion()
    values = completion.get("values")
    total = completion.get("total")
    return PromptCompletion(
        values=[str(value) for value in values] if isinstance(values, list) else [],
        has_more=bool(completion.get("hasMore")),
        total=total if isinstance(total, int) and not isinstance(total, bool) else None,
    )


async def complete_prompt_argument(
    url: str,
    transport: str | TransportKind | None,
    name: str,
    argument: str,
    value: str | None = None,
    headers: HeaderInput = None,
    context_args: Mapping[str, Any] | None = None,
    *,
    state: BridgeState,
    timeout_seconds: float = PROMPT_TIMEOUT_SECONDS,
) -> PromptCompletion:
    """Ask the server to complete one prompt argument through ``completion/complete``.

    Uses a fresh connection like ``resolve_prompt`` and reports failures in
    ``PromptCompletion.error``.
    """
    from mcp.types import PromptReference

    hint = transport if isinstance(transport, TransportKind) else TransportKind.parse(transport)
    config = ServerConfig(url=url, transport_hint=hint, headers=normalize_headers(headers))
    try:
        connection = await state.connector.connect(config)
    except Exception as exc:  # noqa: BLE001
        logger.info("Completion for %s.%s unavailable from %s: %s", name, argument, url, exc)
        return PromptCompletion(total=0, error=str(exc) or type(exc).__name__)

    try:
        async with asyncio.timeout(timeout_seconds):
            result = await connection.session.complete(
                PromptReference(type="ref/prompt", name=name),
                {"name": argument, "value": value or ""},
                context_arguments=coerce_prompt_args(context_args) or None,
            )
    except TimeoutError:
        return PromptCompletion(
            total=0, error=f"completion/complete timed out after {timeout_seconds:g}s"
        )
    except Exception as exc:  # noqa: BLE001
        logger.info("completion/complete %s.%s failed on %s: %s", name, argument, url, exc)
        return PromptCompletion(total=0, error=str(exc) or "completion/complete not supported")
    finally:
        await close_quietly(connection)

    return _completion_from(dump_model(result))
