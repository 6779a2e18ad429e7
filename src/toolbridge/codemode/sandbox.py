"""Load generated helper source against an invocation backend."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from typing_extensions import TypeAliasType

import httpx

from toolbridge.codemode.helpers import INVOKE_FUNCTION_NAME
from toolbridge.mcp.bridge import ToolBridge
from toolbridge.mcp.models import ErrorCode, JSONObject
from toolbridge.mcp.normalizer import InvocationResult
from toolbridge.mcp.retry import RetryConfig, fetch_with_retry, format_retry_error

logger = logging.getLogger(__name__)

PROXY_PATH = "/api/v1/codemode/proxy"
PROXY_TOKEN_HEADER = "x-codemode-token"

Invoker = TypeAliasType("Invoker", Callable[[JSONObject], Awaitable[JSONObject]])


def load_helpers(source: str, invoker: Invoker) -> dict[str, Any]:
    """Execute helper source in a fresh namespace bound to ``invoker``.

    Returns the namespace; ``namespace["helpers"]`` is the entry point.
    """
    namespace: dict[str, Any] = {
        "__name__": "toolbridge_generated_helpers",
        INVOKE_FUNCTION_NAME: invoker,
    }
    code = compile(source, "<toolbridge-helpers>", "exec")
    exec(code, namespace)  # noqa: S102
    return namespace


def bridge_invoker(bridge: ToolBridge) -> Invoker:
    """In-process backend: requests go straight to the session's dispatcher."""

    async def invoke(request: JSONObject) -> JSONObject:
        return await bridge.dispatch(request)

    return invoke


class ProxyInvoker:
    """Backend that forwards helper requests to the HTTP proxy endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        config: RetryConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = base_url.rstrip("/") + PROXY_PATH
        self._headers = {PROXY_TOKEN_HEADER: token} if token else {}
        self._config = config
        self._client = client

    async def __call__(self, request: JSONObject) -> JSONObject:
        result = await fetch_with_retry(
            self._url,
            method="POST",
            payload=request,
            headers=self._headers,
            config=self._config,
            client=self._client,
        )
        if result.ok and isinstance(result.value, Mapping):
            return dict(result.value)
        if isinstance(result.parsed, Mapping) and "ok" in result.parsed:
            return dict(result.parsed)
        if result.ok:
            return InvocationResult.failure(
                ErrorCode.EXECUTION_ERROR, "Proxy returned a non-JSON response"
            ).to_dict()

        formatted = format_retry_error(result)
        logger.warning("Proxy call to %s failed: %s", self._url, result.error)
        return InvocationResult.failure(
            result.error_code or ErrorCode.UNKNOWN_ERROR,
            f"{formatted['error']}: {formatted['details']}",
            details={
                "status_code": result.status_code,
                "attempts": result.attempts,
                "recoverable": formatted["recoverable"],
            },
        ).to_dict()
