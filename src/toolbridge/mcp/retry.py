"""Bounded retry with exponential backoff for outbound calls."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from typing_extensions import TypeAliasType

import httpx

from toolbridge.mcp.models import ErrorCode, JSONValue

logger = logging.getLogger(__name__)

Sleep = TypeAliasType("Sleep", Callable[[float], Awaitable[None]])
Jitter = TypeAliasType("Jitter", Callable[[], float])

TRANSIENT_MARKERS = (
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "socket hang up",
    "network error",
    "Failed to fetch",
)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry budget for one outbound call."""

    max_retries: int = 2
    base_delay_ms: int = 500
    max_delay_ms: int = 5000
    timeout_ms: int = 30000


@dataclass(slots=True)
class RetryResult:
    """Outcome of a retried call, successful or classified."""

    ok: bool
    attempts: int
    total_time_ms: float
    value: Any = None
    status_code: int | None = None
    text: str | None = None
    parsed: JSONValue = None
    error: str | None = None
    error_code: ErrorCode | None = None


class _StatusFailure(Exception):
    def __init__(
        self,
        status_code: int,
        *,
        text: str | None = None,
        parsed: JSONValue = None,
    ) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.text = text
        self.parsed = parsed

    @property
    def error(self) -> str:
        if isinstance(self.parsed, dict):
            detail = self.parsed.get("error")
            if isinstance(detail, str) and detail:
                return detail
        return self.text or f"HTTP {self.status_code}"


@dataclass(slots=True)
class _Fetched:
    status_code: int
    text: str
    parsed: JSONValue


def compute_delay_ms(retry: int, config: RetryConfig, *, jitter: Jitter = random.random) -> float:
    """Delay before the ``retry``-th retry (1-based), with +/-25% jitter, capped."""
    exponential = config.base_delay_ms * 2 ** (retry - 1)
    offset = exponential * 0.25 * (jitter() * 2 - 1)
    return min(exponential + offset, config.max_delay_ms)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def classify_status(status_code: int) -> ErrorCode:
    if status_code == 429:
        return ErrorCode.RATE_LIMITED
    if status_code >= 500:
        return ErrorCode.SERVER_ERROR
    return ErrorCode.CLIENT_ERROR


def is_transient_error(exc: BaseException) -> bool:
    """Network-level failures worth another attempt."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, ConnectionError):
        return True
    message = str(exc)
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    config: RetryConfig | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    jitter: Jitter = random.random,
) -> RetryResult:
    """Run ``operation`` under a per-attempt deadline, retrying transient failures."""
    cfg = config or RetryConfig()
    started = time.perf_counter()

    def elapsed_ms() -> float:
        return (time.perf_counter() - started) * 1000

    last_error: str | None = None
    for attempt in range(cfg.max_retries + 1):
        if attempt > 0:
            delay_ms = compute_delay_ms(attempt, cfg, jitter=jitter)
            logger.info(
                "Retry %d/%d in %.0fms: %s", attempt, cfg.max_retries, delay_ms, last_error
            )
            await sleep(delay_ms / 1000)
        final = attempt == cfg.max_retries
        try:
            async with asyncio.timeout(cfg.timeout_ms / 1000):
                value = await operation()
        except (TimeoutError, httpx.TimeoutException):
            last_error = f"Request timed out after {cfg.timeout_ms}ms"
            if final:
                return RetryResult(
                    ok=False,
                    attempts=attempt + 1,
                    total_time_ms=elapsed_ms(),
                    error=last_error,
                    error_code=ErrorCode.TIMEOUT,
                )
            continue
        except (_StatusFailure, httpx.HTTPStatusError) as exc:
            failure = exc if isinstance(exc, _StatusFailure) else _from_http_error(exc)
            last_error = failure.error
            if not is_retryable_status(failure.status_code) or final:
                return RetryResult(
                    ok=False,
                    attempts=attempt + 1,
                    total_time_ms=elapsed_ms(),
                    status_code=failure.status_code,
                    text=failure.text,
                    parsed=failure.parsed,
                    error=last_error,
                    error_code=classify_status(failure.status_code),
                )
            continue
        except Exception as exc:  # noqa: BLE001
            last_error = str(exc) or type(exc).__name__
            if not is_transient_error(exc) or final:
                return RetryResult(
                    ok=False,
                    attempts=attempt + 1,
                    total_time_ms=elapsed_ms(),
                    error=last_error,
                    error_code=ErrorCode.NETWORK_ERROR,
                )
            continue
        return RetryResult(ok=True, attempts=attempt + 1, total_time_ms=elapsed_ms(), value=value)

    return RetryResult(
        ok=False,
        attempts=cfg.max_retries + 1,
        total_time_ms=elapsed_ms(),
        error=last_error,
        error_code=ErrorCode.NETWORK_ERROR,
    )


async def fetch_with_retry(
    url: str,
    *,
    method: str = "POST",
    payload: JSONValue = None,
    headers: Mapping[str, str] | None = None,
    config: RetryConfig | None = None,
    client: httpx.AsyncClient | None = None,
    sleep: Sleep = asyncio.sleep,
    jitter: Jitter = random.random,
) -> RetryResult:
    """Issue one HTTP request with bounded retries.

    The body is parsed as JSON when possible and kept as text otherwise. 429 and
    5xx responses are retried; any other non-2xx status is terminal.
    """
    http = client or httpx.AsyncClient()

    async def send() -> _Fetched:
        response = await http.request(
            method,
            url,
            json=payload,
            headers=dict(headers) if headers else None,
        )
        text = response.text
        parsed = _parse_json(text)
        if not response.is_success:
            raise _StatusFailure(response.status_code, text=text, parsed=parsed)
        return _Fetched(status_code=response.status_code, text=text, parsed=parsed)

    try:
        result = await call_with_retry(send, config, sleep=sleep, jitter=jitter)
    finally:
        if client is None:
            await http.aclose()

    if result.ok:
        fetched: _Fetched = result.value
        result.status_code = fetched.status_code
        result.text = fetched.text
        result.parsed = fetched.parsed
        result.value = fetched.parsed if fetched.parsed is not None else fetched.text
    return result


_RECOVERABLE_MESSAGES: dict[ErrorCode, tuple[str, str]] = {
    ErrorCode.TIMEOUT: (
        "Request timed out",
        "The call took too long. Try a smaller request or split it up.",
    ),
    ErrorCode.RATE_LIMITED: (
        "Rate limit exceeded",
        "Too many requests. Wait a moment before trying again.",
    ),
    ErrorCode.SERVER_ERROR: (
        "Server error",
        "The remote service returned an error. This is usually temporary.",
    ),
    ErrorCode.NETWORK_ERROR: (
        "Network error",
        "Could not reach the remote service. Check the connection.",
    ),
}


def format_retry_error(result: RetryResult) -> dict[str, str | bool]:
    """Map a failed result to a user-facing ``{error, details, recoverable}`` triple."""
    known = _RECOVERABLE_MESSAGES.get(result.error_code) if result.error_code else None
    if known is None:
        return {
            "error": result.error or "Unknown error",
            "details": "The request was rejected. Check the arguments for issues.",
            "recoverable": False,
        }
    suffix = f" (after {result.attempts} attempts)" if result.attempts > 1 else ""
    headline, details = known
    return {"error": f"{headline}{suffix}", "details": details, "recoverable": True}


def _from_http_error(exc: httpx.HTTPStatusError) -> _StatusFailure:
    response = exc.response
    text = response.text
    return _StatusFailure(response.status_code, text=text, parsed=_parse_json(text))


def _parse_json(text: str) -> JSONValue:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None
