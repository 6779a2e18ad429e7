"""Code mode proxy API schemas."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from toolbridge.mcp.bridge import BRIDGE_PROTOCOL_VERSION


class ProxyInvokeRequest(BaseModel):
    """Helper RPC forwarded over HTTP."""

    server: str | None = None
    tool: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    version: int = BRIDGE_PROTOCOL_VERSION
    format: Literal["envelope", "raw"] = "envelope"


class ProxyToolsResponse(BaseModel):
    """Tool names offered by one server."""

    server: str
    tools: list[str]


class HelperServerResponse(BaseModel):
    """Helper namespace summary for one server."""

    key: str
    tool_count: int
    tool_names: list[str]


class HelpersResponse(BaseModel):
    """Generated helper source plus the prompt-sized docs that describe it."""

    source: str
    docs: str
    doc_tokens: int
    servers: list[HelperServerResponse]
    total_tools: int
    failures: dict[str, str] = Field(default_factory=dict)
