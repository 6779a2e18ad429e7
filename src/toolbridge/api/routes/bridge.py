"""Tool bridge routes: readiness checks, prompts, cancellation and progress."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status

from toolbridge.api.deps import get_bridge_state, get_proxy_bridge
from toolbridge.api.schemas.bridge import (
    ActiveRequestResponse,
    CancelRequest,
    CancelResponse,
    HealthCheckRequest,
    HealthCheckResponse,
    HeaderPair,
    ProgressResponse,
    ProgressUpdateResponse,
    PromptCompleteRequest,
    PromptCompleteResponse,
    PromptGetRequest,
    PromptGetResponse,
    ToolMetricsListResponse,
    ToolMetricsResponse,
)
from toolbridge.mcp.bridge import ToolBridge
from toolbridge.mcp.health import check_server_health
from toolbridge.mcp.models import HeaderInput
from toolbridge.mcp.prompts import complete_prompt_argument, resolve_prompt
from toolbridge.mcp.registry import BridgeState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/mcp", tags=["mcp"])


def _headers(headers: dict[str, str] | list[HeaderPair] | None) -> HeaderInput:
    if isinstance(headers, list):
        return [pair.model_dump() for pair in headers]
    return headers


@router.post("/health", response_model=HealthCheckResponse)
async def server_health(
    payload: HealthCheckRequest,
    response: Response,
    state: BridgeState = Depends(get_bridge_state),
) -> HealthCheckResponse:
    if not payload.url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="url is required")
    report = await check_server_health(
        payload.url,
        _headers(payload.headers),
        payload.transport,
        state=state,
    )
    if not report.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthCheckResponse.model_validate(report.to_dict())


@router.post("/prompts/get", response_model=PromptGetResponse)
async def get_prompt(
    payload: PromptGetRequest,
    state: BridgeState = Depends(get_bridge_state),
) -> PromptGetResponse:
    if not payload.url or not payload.type or not payload.name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="url, type and name are required",
        )
    resolution = await resolve_prompt(
        payload.url,
        payload.type,
        payload.name,
        _headers(payload.headers),
        payload.args,
        state=state,
    )
    return PromptGetResponse.model_validate(resolution.to_dict())


@router.post("/prompts/complete", response_model=PromptCompleteResponse)
async def complete_prompt(
    payload: PromptCompleteRequest,
    state: BridgeState = Depends(get_bridge_state),
) -> PromptCompleteResponse:
    if not payload.url or not payload.type or not payload.name or not payload.argument:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="url, type, name and argument are required",
        )
    completion = await complete_prompt_argument(
        payload.url,
        payload.type,
        payload.name,
        payload.argument,
        payload.value,
        _headers(payload.headers),
        payload.context_args,
        state=state,
    )
    return PromptCompleteResponse.model_validate(completion.to_dict())


@router.post("/cancel", response_model=CancelResponse)
async def cancel_request(
    payload: CancelRequest,
    state: BridgeState = Depends(get_bridge_state),
) -> CancelResponse:
    if not payload.request_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="request_id is required"
        )
    cancelled = await state.requests.cancel_request(payload.request_id, payload.reason)
    if not cancelled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
    logger.info("Cancelled request %s", payload.request_id)
    return CancelResponse(
        success=True,
        request_id=payload.request_id,
        message="Cancellation notification sent",
    )


@router.get("/progress", response_model=ProgressResponse, response_model_exclude_none=True)
async def request_progress(
    token: str | None = None,
    state: BridgeState = Depends(get_bridge_state),
) -> ProgressResponse:
    if token:
        return ProgressResponse(
            token=token,
            updates=[
                ProgressUpdateResponse(
                    progress=update.progress,
                    total=update.total,
                    message=update.message,
                    timestamp=update.timestamp,
                )
                for update in state.progress.get_progress(token)
            ],
        )
    return ProgressResponse(
        active=[
            ActiveRequestResponse(
                request_id=request.request_id,
                server_key=request.server_key,
                tool_name=request.tool_name,
                timestamp=request.timestamp,
            )
            for request in state.requests.active_requests()
        ]
    )


@router.get("/metrics", response_model=ToolMetricsListResponse)
async def tool_metrics(
    bridge: ToolBridge = Depends(get_proxy_bridge),
) -> ToolMetricsListResponse:
    return ToolMetricsListResponse(
        items=[
            ToolMetricsResponse(
                server_key=metric.server_key,
                tool_name=metric.tool_name,
                count=metric.count,
                success=metric.success,
                error=metric.error,
                timeout=metric.timeout,
                average_ms=metric.average_ms,
                last_ms=metric.last_ms,
                last_status=metric.last_status,
                last_error=metric.last_error,
                last_invoked_at=metric.last_invoked_at,
            )
            for metric in bridge.metrics()
        ]
    )
