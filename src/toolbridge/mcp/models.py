"""Shared tool-bridge types and error classes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from typing_extensions import TypeAliasType

JSONValue = TypeAliasType("JSONValue", None | bool | int | float | str | list["JSONValue"] | dict[str, "JSONValue"])
JSONObject = TypeAliasType("JSONObject", dict[str, JSONValue])
HeaderInput = TypeAliasType("HeaderInput", Mapping[str, Any] | list[Mapping[str, Any]] | None)


class TransportKind(StrEnum):
    """Wire transport used to reach a tool server."""

    HTTP = "http"
    SSE = "sse"

    @classmethod
    def parse(cls, value: str | None) -> TransportKind:
        """Map a loose transport hint onto a transport kind."""
        if value is None:
            return cls.HTTP
        lowered = value.strip().lower()
        if lowered == "sse":
            return cls.SSE
        return cls.HTTP


class ErrorCode(StrEnum):
    """Classified failure codes surfaced to callers."""

    CONNECTION_ERROR = "CONNECTION_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TABLE_NOT_FOUND = "TABLE_NOT_FOUND"
    INVALID_ARGUMENTS = "INVALID_ARGUMENTS"
    MISSING_REQUIRED_PARAM = "MISSING_REQUIRED_PARAM"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    STRUCTURED_ERROR = "STRUCTURED_ERROR"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    SERVER_NOT_FOUND = "SERVER_NOT_FOUND"
    UNSUPPORTED_VERSION = "UNSUPPORTED_VERSION"
    CANCELLED = "CANCELLED"
    EXECUTION_ERROR = "EXECUTION_ERROR"


def normalize_headers(headers: HeaderInput) -> dict[str, str]:
    """Accept a header mapping or a list of ``{key, value}`` pairs."""
    if not headers:
        return {}
    normalized: dict[str, str] = {}
    if isinstance(headers, list):
        for entry in headers:
            key = entry.get("key") if isinstance(entry, Mapping) else None
            if not key:
                continue
            value = entry.get("value")
            normalized[str(key)] = "" if value is None else str(value)
        return normalized
    for key, value in headers.items():
        if not key:
            continue
        normalized[str(key)] = "" if value is None else str(value)
    return normalized


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """One remote tool server as supplied by the caller."""

    url: str
    name: str | None = None
    transport_hint: TransportKind = TransportKind.HTTP
    headers: Mapping[str, str] = field(default_factory=dict)
    tool_timeout_ms: int | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ServerConfig:
        url = payload.get("url")
        if not isinstance(url, str) or not url:
            msg = "Server configuration requires a url"
            raise ValueError(msg)
        name = payload.get("name")
        timeout = payload.get("tool_timeout_ms")
        return cls(
            url=url,
            name=name if isinstance(name, str) and name else None,
            transport_hint=TransportKind.parse(
                payload.get("transport") or payload.get("type") or payload.get("transport_hint")
            ),
            headers=normalize_headers(payload.get("headers")),
            tool_timeout_ms=timeout if isinstance(timeout, int) and timeout > 0 else None,
        )


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Tool as advertised by a remote server."""

    name: str
    input_schema: JSONObject
    description: str | None = None

    def to_dict(self) -> JSONObject:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True, slots=True)
class PromptArgument:
    """Declared argument of a prompt template."""

    name: str
    description: str | None = None
    required: bool = False


@dataclass(frozen=True, slots=True)
class PromptDefinition:
    """Prompt template as advertised by a remote server."""

    name: str
    title: str | None = None
    description: str | None = None
    arguments: tuple[PromptArgument, ...] = ()

    def to_dict(self) -> JSONObject:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "arguments": [
                {
                    "name": argument.name,
                    "description": argument.description,
                    "required": argument.required,
                }
                for argument in self.arguments
            ],
        }


class BridgeError(RuntimeError):
    """Base error carrying a classified code."""

    def __init__(self, message: str, *, code: ErrorCode | str) -> None:
        super().__init__(message)
        self.code = code


class ConnectionFailedError(BridgeError):
    """Raised when every transport attempt for one server failed."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        transports_tried: list[TransportKind],
        failures: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONNECTION_ERROR)
        self.url = url
        self.transports_tried = list(transports_tried)
        self.failures = dict(failures or {})


class ToolInvocationError(BridgeError):
    """Raised when a tool invocation resolves to an error envelope."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | str,
        tool_name: str,
        server_key: str,
        args: JSONObject | None = None,
        hints: list[str] | None = None,
        details: JSONObject | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.tool_name = tool_name
        self.server_key = server_key
        self.tool_args = dict(args or {})
        self.hints = list(hints or [])
        self.details = details


def dump_model(value: Any) -> Any:
    """Return a JSON-compatible view of an MCP SDK model or plain value."""
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", exclude_none=True)
    return value
