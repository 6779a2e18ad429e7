"""Tool bridge API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class HeaderPair(BaseModel):
    """One request header entered as a key/value pair."""

    key: str | None = None
    value: str | None = None


class HealthCheckRequest(BaseModel):
    """Server readiness check payload."""

    url: str | None = None
    transport: str | None = None
    headers: dict[str, str] | list[HeaderPair] | None = None


class ToolResponse(BaseModel):
    """Tool advertised by a checked server."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict)


class PromptArgumentResponse(BaseModel):
    """Declared prompt argument."""

    name: str
    description: str | None = None
    required: bool = False


class PromptResponse(BaseModel):
    """Prompt advertised by a checked server."""

    name: str
    title: str | None = None
    description: str | None = None
    arguments: list[PromptArgumentResponse] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Readiness check result."""

    ready: bool
    transport: str | None = None
    cached: bool = False
    connection_time_ms: float | None = None
    tool_count: int = 0
    tools: list[ToolResponse] = Field(default_factory=list)
    prompts: list[PromptResponse] = Field(default_factory=list)
    error: str | None = None
    transports_attempted: list[str] = Field(default_factory=list)


class PromptGetRequest(BaseModel):
    """Prompt resolution payload."""

    url: str | None = None
    type: str | None = None
    name: str | None = None
    headers: dict[str, str] | list[HeaderPair] | None = None
    args: dict[str, Any] | None = None


class PromptMessageResponse(BaseModel):
    """One resolved prompt message."""

    role: str
    text: str
    content: list[dict[str, Any]] = Field(default_factory=list)


class PromptGetResponse(BaseModel):
    """Resolved prompt messages, or the reason resolution failed."""

    messages: list[PromptMessageResponse] = Field(default_factory=list)
    description: str | None = None
    error: str | None = None


class PromptCompleteRequest(BaseModel):
    """Argument completion payload for one prompt."""

    url: str | None = None
    type: str | None = None
    name: str | None = None
    argument: str | None = None
    value: str | None = None
    headers: dict[str, str] | list[HeaderPair] | None = None
    context_args: dict[str, Any] | None = None


class PromptCompleteResponse(BaseModel):
    """Completion values, or the reason completion failed."""

    values: list[str] = Field(default_factory=list)
    has_more: bool = Field(default=False, alias="hasMore")
    total: int | None = None
    error: str | None = None


class CancelRequest(BaseModel):
    """Cancellation payload for an in-flight tool call."""

    request_id: str | None = None
    reason: str | None = None


class CancelResponse(BaseModel):
    """Cancellation acknowledgement."""

    success: bool
    request_id: str
    message: str


class ProgressUpdateResponse(BaseModel):
    """One recorded progress notification."""

    progress: float
    total: float | None = None
    message: str | None = None
    timestamp: datetime


class ActiveRequestResponse(BaseModel):
    """In-flight tool call."""

    request_id: str
    server_key: str
    tool_name: str | None = None
    timestamp: datetime


class ProgressResponse(BaseModel):
    """Progress for one token, or the in-flight requests when no token is given."""

    token: str | None = None
    updates: list[ProgressUpdateResponse] | None = None
    active: list[ActiveRequestResponse] | None = None


class ToolMetricsResponse(BaseModel):
    """Invocation counters for one tool."""

    server_key: str
    tool_name: str
    count: int
    success: int
    error: int
    timeout: int
    average_ms: float
    last_ms: float | None = None
    last_status: str | None = None
    last_error: str | None = None
    last_invoked_at: datetime | None = None


class ToolMetricsListResponse(BaseModel):
    """Per-tool invocation counters of the shared bridge session."""

    items: list[ToolMetricsResponse]
