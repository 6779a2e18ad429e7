"""Normalize heterogeneous tool results into a stable envelope.

Raw tool output arrives in many shapes: MCP ``CallToolResult`` payloads with
text blocks, ``structuredContent`` objects, markdown summaries pointing at
staged datasets, or results that were already normalized once. ``transform``
runs an ordered chain of classifiers over the payload; the first one with an
opinion wins, so higher-fidelity signals (structured content) are never
shadowed by looser text heuristics.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from typing_extensions import TypeAliasType

from toolbridge.mcp.models import ErrorCode, JSONObject, JSONValue, dump_model

SUCCESS_GLYPHS = ("✅", "✓", "✔", "🎉", "☑", "🟢")

_ERROR_PATTERNS = (
    re.compile(r"\berror\b:", re.IGNORECASE),
    re.compile(r"\bfailed\b:", re.IGNORECASE),
    re.compile(r"\bexception\b:", re.IGNORECASE),
    re.compile(r"Query failed", re.IGNORECASE),
    re.compile(r"Manager Error", re.IGNORECASE),
    re.compile(r"❌|⚠️|❗|🚫"),
    re.compile(r"MCP error -326\d\d"),
    re.compile(r"Invalid arguments|validation error|invalid_type|invalid_enum_value"),
)
_MESSAGE_PATTERN = re.compile(
    r"(?:Error|Failed|Exception):\s*(.+?)(?=\n\n|\n(?:[A-Z]|$)|$)", re.DOTALL
)
_ERROR_CODES = (
    ("no such table", ErrorCode.TABLE_NOT_FOUND),
    ("Invalid arguments", ErrorCode.INVALID_ARGUMENTS),
    ("timed out", ErrorCode.TIMEOUT),
    ("required", ErrorCode.MISSING_REQUIRED_PARAM),
    ("not found", ErrorCode.NOT_FOUND),
)

_STAGING_TRIGGERS = ("Data Staged", "data_access_id")
_ACCESS_ID_PATTERNS = (
    re.compile(r"Data Access ID:\s*\*\*\s*([a-zA-Z0-9_]+)\s*\*\*"),
    re.compile(r"data_access_id[:\s]*[\"']?([a-zA-Z0-9_]+)[\"']?", re.IGNORECASE),
    re.compile(r"([a-z]+_[a-z]+_\d{10,}_[a-z0-9]{4,})"),
)
_ACCESS_ID_SHAPE = re.compile(r"[a-z]+_[a-z]+_\d{10,}_[a-z0-9]{4,}")
_TABLE_PATTERN = re.compile(r"FROM\s+([a-z_][a-z0-9_]*)", re.IGNORECASE)
_SQL_KEYWORDS = frozenset({"select", "where", "limit", "join", "order", "group"})
_ROW_COUNT_PATTERN = re.compile(r"(?:Entities|Records|Results):\s*\**(\d+)\**", re.IGNORECASE)
_PAYLOAD_SIZE_PATTERN = re.compile(r"Payload Size:\s*\**(\d+)\s*(KB|MB|bytes)?", re.IGNORECASE)
_SIZE_UNITS = {"kb": 1024, "mb": 1024 * 1024, "bytes": 1}

_JSON_FENCES = (
    re.compile(r"```json\s*(\{.*?\}|\[.*?\])\s*```", re.DOTALL),
    re.compile(r"```\s*(\{.*?\}|\[.*?\])\s*```", re.DOTALL),
)
_ISSUE_ARRAY = re.compile(r"\[\s*\{.*\}\s*\]", re.DOTALL)
_QUOTED_NAME = re.compile(r"[\"'`]([A-Za-z_][A-Za-z0-9_]*)[\"'`]")

PARAMETER_CORRECTIONS: dict[str, str] = {
    "q": "query",
    "search": "query",
    "term": "query",
    "keyword": "query",
    "keywords": "query",
    "search_term": "query",
    "max": "limit",
    "max_results": "limit",
    "count": "limit",
    "size": "limit",
    "top_k": "limit",
    "num_results": "limit",
    "entity_id": "id",
    "item_id": "id",
    "record_id": "id",
    "identifier": "id",
    "page_offset": "offset",
    "skip": "offset",
}


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Classified failure extracted from a tool result."""

    code: str
    message: str
    details: JSONObject | None = None
    hints: tuple[str, ...] = ()

    def to_dict(self) -> JSONObject:
        payload: JSONObject = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        if self.hints:
            payload["hints"] = list(self.hints)
        return payload

    @classmethod
    def from_value(cls, value: Any) -> ErrorInfo:
        if isinstance(value, Mapping):
            details = value.get("details")
            hints = value.get("hints")
            return cls(
                code=str(value.get("code") or ErrorCode.UNKNOWN_ERROR),
                message=str(value.get("message") or "Tool execution failed"),
                details=dict(details) if isinstance(details, Mapping) else None,
                hints=tuple(str(hint) for hint in hints) if isinstance(hints, list) else (),
            )
        return cls(code=ErrorCode.UNKNOWN_ERROR, message=str(value))


@dataclass(frozen=True, slots=True)
class StagedHandle:
    """Reference to a large result set staged server-side for follow-up queries."""

    data_access_id: str
    tables: tuple[str, ...] = ()
    row_count: int | None = None
    payload_size: int | None = None

    @property
    def primary_table(self) -> str | None:
        return self.tables[0] if self.tables else None

    def to_dict(self) -> JSONObject:
        payload: JSONObject = {
            "data_access_id": self.data_access_id,
            "tables": list(self.tables),
        }
        if self.primary_table is not None:
            payload["primary_table"] = self.primary_table
        if self.row_count is not None:
            payload["row_count"] = self.row_count
        if self.payload_size is not None:
            payload["payload_size"] = self.payload_size
        return payload

    @classmethod
    def from_value(cls, value: Mapping[str, Any]) -> StagedHandle:
        tables = value.get("tables") or []
        row_count = value.get("row_count")
        payload_size = value.get("payload_size")
        return cls(
            data_access_id=str(value.get("data_access_id", "")),
            tables=tuple(str(table) for table in tables),
            row_count=row_count if isinstance(row_count, int) else None,
            payload_size=payload_size if isinstance(payload_size, int) else None,
        )


@dataclass(frozen=True, slots=True)
class InvocationResult:
    """Normalized envelope returned by every invocation."""

    ok: bool
    data: JSONValue = None
    error: ErrorInfo | None = None
    staged: StagedHandle | None = None

    @classmethod
    def success(cls, data: JSONValue) -> InvocationResult:
        return cls(ok=True, data=data)

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        *,
        details: JSONObject | None = None,
        hints: tuple[str, ...] | list[str] = (),
    ) -> InvocationResult:
        return cls(
            ok=False,
            error=ErrorInfo(code=code, message=message, details=details, hints=tuple(hints)),
        )

    def to_dict(self) -> JSONObject:
        payload: JSONObject = {"ok": self.ok, "data": self.data}
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.staged is not None:
            payload["staged"] = self.staged.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> InvocationResult:
        """Rebuild an envelope from an ``ok``/``data`` shaped mapping."""
        raw_error = payload.get("error")
        ok = payload.get("ok")
        if not isinstance(ok, bool):
            ok = not raw_error
        if "data" in payload:
            data = payload.get("data")
        else:
            rest = {
                key: value
                for key, value in payload.items()
                if key not in {"ok", "error", "staged"}
            }
            data = rest or None
        staged = payload.get("staged")
        return cls(
            ok=ok,
            data=data,
            error=ErrorInfo.from_value(raw_error) if raw_error else None,
            staged=StagedHandle.from_value(staged) if isinstance(staged, Mapping) else None,
        )


@dataclass(slots=True)
class RawResponse:
    """Raw tool output plus the context classifiers need."""

    payload: Any
    tool_name: str
    args: JSONObject = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return isinstance(self.payload, Mapping) and self.payload.get("isError") is True

    @property
    def text(self) -> str:
        return primary_text(self.payload)


Classifier = TypeAliasType("Classifier", Callable[[RawResponse], InvocationResult | None])


def primary_text(payload: Any) -> str:
    """Return the first text block of an MCP result, or the payload if it is a string."""
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, Mapping):
        return ""
    content = payload.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, Mapping) and isinstance(block.get("text"), str):
                return block["text"]
    return ""


def detect_error(text: str, *, is_error: bool = False) -> bool:
    """Decide whether a tool's text output reports a failure.

    An explicit error flag always wins. Otherwise a leading success glyph marks
    the text as informational even when it mentions warnings.
    """
    if is_error:
        return True
    if text.lstrip().startswith(SUCCESS_GLYPHS):
        return False
    return any(pattern.search(text) for pattern in _ERROR_PATTERNS)


def extract_error(text: str, *, args: Mapping[str, Any] | None = None) -> ErrorInfo:
    """Build a best-effort code, message and hints from failure text."""
    match = _MESSAGE_PATTERN.search(text)
    if match and match.group(1).strip():
        message = match.group(1).strip()
    elif 0 < len(text) < 500:
        message = text.strip()
    elif text:
        message = text[:200].strip() + "..."
    else:
        message = "Tool execution failed"

    code: str = ErrorCode.UNKNOWN_ERROR
    for marker, candidate in _ERROR_CODES:
        if marker in text:
            code = candidate
            break

    details: JSONObject | None = None
    if text and text != message and len(text) < 2000:
        details = {"full_error": text}
    return ErrorInfo(
        code=code,
        message=message,
        details=details,
        hints=tuple(validation_hints(text, args=args)),
    )


def validation_hints(text: str, *, args: Mapping[str, Any] | None = None) -> list[str]:
    """Parse zod-style issue arrays and parameter-name synonyms into fix-up hints."""
    hints: list[str] = []
    for issue in _validation_issues(text):
        hint = _issue_hint(issue)
        if hint and hint not in hints:
            hints.append(hint)

    candidates = list(args or {})
    candidates.extend(found for found in _QUOTED_NAME.findall(text) if found not in candidates)
    for name in candidates:
        canonical = PARAMETER_CORRECTIONS.get(name)
        if canonical is None or (args is not None and canonical in args):
            continue
        hint = f"Use '{canonical}' instead of '{name}'"
        if hint not in hints:
            hints.append(hint)
    return hints


def _validation_issues(text: str) -> list[Mapping[str, Any]]:
    match = _ISSUE_ARRAY.search(text)
    if match is None:
        return []
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return [issue for issue in parsed if isinstance(issue, Mapping)]


def _issue_hint(issue: Mapping[str, Any]) -> str | None:
    raw_path = issue.get("path")
    path = ".".join(str(part) for part in raw_path) if isinstance(raw_path, list) else ""
    code = issue.get("code")
    options = issue.get("options")
    if code == "invalid_enum_value" and isinstance(options, list):
        allowed = ", ".join(str(option) for option in options)
        return f"Parameter '{path}' must be one of: {allowed}"
    if code == "unrecognized_keys" and isinstance(issue.get("keys"), list):
        keys = [str(key) for key in issue["keys"]]
        return f"Remove unrecognized parameter(s): {', '.join(keys)}"
    expected = issue.get("expected")
    received = issue.get("received")
    if received == "undefined" or issue.get("message") == "Required":
        suffix = f" (expected {expected})" if expected else ""
        return f"Missing required parameter '{path}'{suffix}"
    if expected and received:
        return f"Parameter '{path}' should be {expected}, got {received}"
    message = issue.get("message")
    if path and isinstance(message, str):
        return f"Parameter '{path}': {message}"
    return None


def extract_staged(text: str) -> StagedHandle | None:
    """Find a staged-dataset reference in tool output, if there is one."""
    if not any(trigger in text for trigger in _STAGING_TRIGGERS):
        return None
    access_id = _data_access_id(text)
    if access_id is None:
        return None

    tables: list[str] = []
    for match in _TABLE_PATTERN.finditer(text):
        table = match.group(1).lower()
        if table not in _SQL_KEYWORDS and table not in tables:
            tables.append(table)

    row_count = None
    row_match = _ROW_COUNT_PATTERN.search(text)
    if row_match:
        row_count = int(row_match.group(1))

    payload_size = None
    size_match = _PAYLOAD_SIZE_PATTERN.search(text)
    if size_match:
        unit = (size_match.group(2) or "bytes").lower()
        payload_size = int(size_match.group(1)) * _SIZE_UNITS[unit]

    return StagedHandle(
        data_access_id=access_id,
        tables=tuple(tables),
        row_count=row_count,
        payload_size=payload_size,
    )


def _data_access_id(text: str) -> str | None:
    for pattern in _ACCESS_ID_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        cleaned = re.sub(r"[^\w\-]", "", match.group(1)).strip()
        if _ACCESS_ID_SHAPE.fullmatch(cleaned):
            return cleaned
    return None


def extract_json(text: str) -> JSONValue | None:
    """Parse a fenced JSON block, or the whole text when it looks like JSON."""
    for pattern in _JSON_FENCES:
        match = pattern.search(text)
        if match is None:
            continue
        try:
            return json.loads(match.group(1))
        except ValueError:
            continue
    stripped = text.lstrip()
    if stripped.startswith(("{", "[")):
        try:
            return json.loads(text)
        except ValueError:
            return None
    return None


def _already_normalized(response: RawResponse) -> InvocationResult | None:
    payload = response.payload
    if isinstance(payload, InvocationResult):
        return payload
    if isinstance(payload, Mapping) and ("ok" in payload or "data" in payload):
        return InvocationResult.from_dict(payload)
    return None


def _structured_content(response: RawResponse) -> InvocationResult | None:
    payload = response.payload
    if not isinstance(payload, Mapping) or payload.get("structuredContent") is None:
        return None
    structured = payload["structuredContent"]
    if isinstance(structured, Mapping) and (
        structured.get("success") is False or structured.get("error")
    ):
        raw_error = structured.get("error")
        nested = raw_error if isinstance(raw_error, Mapping) else {}
        code = structured.get("code") or nested.get("code") or ErrorCode.STRUCTURED_ERROR
        message = (
            nested.get("message")
            or (raw_error if isinstance(raw_error, str) else None)
            or structured.get("message")
            or "Tool reported failure"
        )
        return InvocationResult.failure(
            str(code),
            str(message),
            details={"structured_content": dict(structured)},
        )
    return InvocationResult.success(structured)


def _plain_value(response: RawResponse) -> InvocationResult | None:
    payload = response.payload
    if isinstance(payload, str):
        return None
    if isinstance(payload, Mapping) and ("content" in payload or "isError" in payload):
        return None
    return InvocationResult.success(payload)


def _error_text(response: RawResponse) -> InvocationResult | None:
    text = response.text
    if not detect_error(text, is_error=response.is_error):
        return None
    error = extract_error(text, args=response.args)
    return InvocationResult(ok=False, error=error)


def _staged(response: RawResponse) -> InvocationResult | None:
    handle = extract_staged(response.text)
    if handle is None:
        return None
    return InvocationResult(
        ok=True,
        data={
            "data_access_id": handle.data_access_id,
            "table": handle.primary_table,
            "tables": list(handle.tables),
            "row_count": handle.row_count,
            "payload_size": handle.payload_size,
        },
        staged=handle,
    )


def _embedded_json(response: RawResponse) -> InvocationResult | None:
    parsed = extract_json(response.text)
    if parsed is None:
        return None
    return InvocationResult.success(parsed)


def _raw_text(response: RawResponse) -> InvocationResult:
    return InvocationResult.success({"text": response.text, "_raw_text": True})


CLASSIFIERS: tuple[Classifier, ...] = (
    _already_normalized,
    _structured_content,
    _plain_value,
    _error_text,
    _staged,
    _embedded_json,
    _raw_text,
)


def transform(
    raw: Any,
    tool_name: str,
    *,
    args: Mapping[str, Any] | None = None,
) -> InvocationResult:
    """Classify one raw tool result; the first classifier with an opinion wins."""
    response = RawResponse(payload=dump_model(raw), tool_name=tool_name, args=dict(args or {}))
    for classifier in CLASSIFIERS:
        result = classifier(response)
        if result is not None:
            return result
    return _raw_text(response)
