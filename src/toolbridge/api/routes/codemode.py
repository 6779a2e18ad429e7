"""Code mode routes: the helper RPC proxy and generated helper source."""

from __future__ import annotations

import secrets
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse

from toolbridge.api.deps import get_proxy_bridge, get_settings
from toolbridge.api.schemas.codemode import (
    HelperServerResponse,
    HelpersResponse,
    ProxyInvokeRequest,
    ProxyToolsResponse,
)
from toolbridge.codemode.docs import (
    estimate_doc_tokens,
    generate_compact_docs,
    generate_minimal_docs,
    generate_typed_docs,
)
from toolbridge.codemode.helpers import generate_helpers_source, helpers_metadata
from toolbridge.codemode.sandbox import PROXY_TOKEN_HEADER
from toolbridge.config import BridgeSettings
from toolbridge.mcp.bridge import ToolBridge
from toolbridge.mcp.models import ErrorCode

router = APIRouter(prefix="/api/v1/codemode", tags=["codemode"])

_CLIENT_ERROR_CODES = frozenset(
    {
        ErrorCode.SERVER_NOT_FOUND,
        ErrorCode.TOOL_NOT_FOUND,
        ErrorCode.INVALID_ARGUMENTS,
        ErrorCode.UNSUPPORTED_VERSION,
    }
)
_DOC_GENERATORS = {
    "compact": generate_compact_docs,
    "minimal": generate_minimal_docs,
    "typed": generate_typed_docs,
}


def require_proxy_token(
    token: str | None = Header(default=None, alias=PROXY_TOKEN_HEADER),
    settings: BridgeSettings = Depends(get_settings),
) -> None:
    expected = settings.proxy_token
    if expected is None:
        return
    if token is None or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _unknown_server(bridge: ToolBridge) -> HTTPException:
    available = ", ".join(sorted(bridge.catalog)) or "(none)"
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Unknown server. Use one of: {available}",
    )


@router.get(
    "/proxy",
    response_model=ProxyToolsResponse,
    dependencies=[Depends(require_proxy_token)],
)
async def proxy_tools(
    server: str | None = None,
    bridge: ToolBridge = Depends(get_proxy_bridge),
) -> ProxyToolsResponse:
    entry = bridge.catalog.get(server) if server else None
    if entry is None:
        raise _unknown_server(bridge)
    return ProxyToolsResponse(server=entry.key, tools=list(entry.tools))


@router.post("/proxy", dependencies=[Depends(require_proxy_token)])
async def proxy_invoke(
    payload: ProxyInvokeRequest,
    bridge: ToolBridge = Depends(get_proxy_bridge),
) -> JSONResponse:
    envelope: dict[str, Any] = await bridge.dispatch(payload.model_dump())
    error = envelope.get("error") or {}
    if not envelope.get("ok") and error.get("code") in _CLIENT_ERROR_CODES:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=envelope)
    return JSONResponse(content=envelope)


@router.get(
    "/helpers",
    response_model=HelpersResponse,
    dependencies=[Depends(require_proxy_token)],
)
async def helper_source(
    docs: Literal["compact", "minimal", "typed"] = "compact",
    bridge: ToolBridge = Depends(get_proxy_bridge),
) -> HelpersResponse:
    rendered = _DOC_GENERATORS[docs](bridge.catalog)
    metadata = helpers_metadata(bridge.catalog)
    return HelpersResponse(
        source=generate_helpers_source(bridge.catalog),
        docs=rendered,
        doc_tokens=estimate_doc_tokens(rendered),
        servers=[HelperServerResponse.model_validate(item) for item in metadata["servers"]],
        total_tools=metadata["total_tools"],
        failures=bridge.failures,
    )
