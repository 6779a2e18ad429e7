"""Project an aggregated catalog into helper source for a code sandbox.

The sandbox shares no objects with the host. The generated module carries the
catalog as a JSON string literal and reaches the host through a single
awaitable, ``__bridge_invoke__(request)``, whose request shape is versioned by
``HELPER_PROTOCOL_VERSION``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from string import Template

from toolbridge.mcp.catalog import AggregatedCatalog
from toolbridge.mcp.models import JSONObject

logger = logging.getLogger(__name__)

HELPER_PROTOCOL_VERSION = 1
STAGED_QUERY_LIMIT = 100
INVOKE_FUNCTION_NAME = "__bridge_invoke__"

_HELPERS_TEMPLATE = Template(
    '''\
"""Generated tool helpers. Regenerate instead of editing."""

import difflib
import json

HELPER_PROTOCOL_VERSION = $version
STAGED_QUERY_LIMIT = $staged_limit
_CATALOG = json.loads($catalog)
_ALIASES = json.loads($aliases)


class ToolCallError(Exception):
    """A tool invocation that resolved to an error envelope."""

    def __init__(self, message, *, code, tool_name, server, args=None, hints=None, details=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.tool_name = tool_name
        self.server = server
        self.tool_args = dict(args or {})
        self.hints = list(hints or [])
        self.details = details

    def __str__(self):
        text = f"[{self.server}.{self.tool_name}] {self.code}: {self.message}"
        if self.hints:
            text += "\\nHints:\\n" + "\\n".join(f"  - {hint}" for hint in self.hints)
        return text


def _describe_param(name, schema, required):
    entry = {"name": name, "type": schema.get("type", "any"), "required": required}
    if schema.get("description"):
        entry["description"] = schema["description"]
    if isinstance(schema.get("enum"), list):
        entry["enum"] = list(schema["enum"])
    if "default" in schema:
        entry["default"] = schema["default"]
    return entry


class ServerHelpers:
    """Discovery and invocation methods for one server."""

    def __init__(self, key, tools):
        self._key = key
        self._tools = tools

    def __repr__(self):
        return f"<helpers.{self._key}: {len(self._tools)} tools>"

    def __dir__(self):
        return sorted(set(super().__dir__()) | {n for n in self._tools if n.isidentifier()})

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._tools:
            raise AttributeError(self._unknown_tool_message(name))

        async def call_tool(args=None, **kwargs):
            merged = dict(args or {})
            merged.update(kwargs)
            return await self.get_data(name, merged)

        call_tool.__name__ = name
        call_tool.__doc__ = self._tools[name].get("description")
        return call_tool

    def _unknown_tool_message(self, tool_name):
        available = sorted(self._tools)
        message = f"Tool '{tool_name}' not found on server '{self._key}'."
        close = difflib.get_close_matches(tool_name, available, n=3)
        if close:
            message += f" Did you mean: {', '.join(close)}?"
        return message + f" Available tools: {', '.join(available) or '(none)'}"

    def list_tools(self):
        return list(self._tools)

    def search_tools(self, query):
        needle = str(query).lower()
        return [
            {"name": name, "description": tool.get("description") or ""}
            for name, tool in self._tools.items()
            if needle in name.lower() or needle in (tool.get("description") or "").lower()
        ]

    def get_tool_schema(self, tool_name):
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolCallError(
                self._unknown_tool_message(tool_name),
                code="TOOL_NOT_FOUND",
                tool_name=tool_name,
                server=self._key,
                details={"available": sorted(self._tools)},
            )
        schema = tool.get("input_schema") or {}
        properties = schema.get("properties") or {}
        required_names = set(schema.get("required") or [])
        required = []
        optional = []
        for name, prop in properties.items():
            prop = prop if isinstance(prop, dict) else {}
            target = required if name in required_names else optional
            target.append(_describe_param(name, prop, name in required_names))
        return {
            "name": tool_name,
            "description": tool.get("description") or "",
            "required": required,
            "optional": optional,
            "input_schema": schema,
        }

    async def invoke(self, tool_name, args=None, *, throw_on_error=True, return_format="envelope"):
        """Call a tool through the host; returns the envelope, or raw data for "raw"."""
        request = {
            "version": HELPER_PROTOCOL_VERSION,
            "server": self._key,
            "tool": tool_name,
            "args": dict(args or {}),
            "format": return_format,
        }
        envelope = await __bridge_invoke__(request)
        if not envelope.get("ok"):
            if not throw_on_error:
                return envelope
            error = envelope.get("error") or {}
            raise ToolCallError(
                error.get("message") or "Tool execution failed",
                code=error.get("code") or "UNKNOWN_ERROR",
                tool_name=tool_name,
                server=self._key,
                args=request["args"],
                hints=error.get("hints"),
                details=error.get("details"),
            )
        if return_format == "raw":
            return envelope.get("data")
        return envelope

    async def get_data(self, tool_name, args=None):
        """Invoke and return the data, following a staged result with one query."""
        envelope = await self.invoke(tool_name, args)
        staged = envelope.get("staged") or {}
        if staged.get("data_access_id") and staged.get("primary_table"):
            sql = f"SELECT * FROM {staged['primary_table']} LIMIT {STAGED_QUERY_LIMIT}"
            return await self.query_staged_data(staged["data_access_id"], sql)
        return envelope.get("data")

    async def query_staged_data(self, data_access_id, sql):
        args = {"operation": "query", "data_access_id": data_access_id, "sql": sql}
        envelope = await self.invoke("data_manager", args)
        data = envelope.get("data")
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            if isinstance(data.get("rows"), list):
                return data["rows"]
            nested = data.get("data")
            if isinstance(nested, list):
                return nested
            if isinstance(nested, dict) and isinstance(nested.get("rows"), list):
                return nested["rows"]
        raise ToolCallError(
            "Could not extract rows from query response",
            code="UNKNOWN_ERROR",
            tool_name="data_manager",
            server=self._key,
            args=args,
        )


class Helpers:
    """Per-server helpers; attribute and item access both resolve a server key."""

    def __init__(self, servers):
        self._servers = servers

    def __getattr__(self, name):
        servers = self.__dict__.get("_servers", {})
        if name in servers:
            return servers[name]
        raise AttributeError(
            f"No helpers for server '{name}'. Available: {', '.join(sorted(servers)) or '(none)'}"
        )

    def __getitem__(self, name):
        return self._servers[name]

    def __contains__(self, name):
        return name in self._servers

    def __iter__(self):
        return iter(self._servers)

    def __dir__(self):
        return sorted(set(super().__dir__()) | {n for n in self._servers if n.isidentifier()})

    def servers(self):
        return list(self._servers)


_servers = {key: ServerHelpers(key, entry["tools"]) for key, entry in _CATALOG.items()}
for _alias, _target in _ALIASES.items():
    if _alias and _target in _servers:
        _servers[_alias] = _servers[_target]

helpers = Helpers(_servers)
'''
)


def catalog_payload(catalog: AggregatedCatalog) -> JSONObject:
    """The catalog subset the generated helpers need."""
    return {
        entry.key: {
            "tools": {
                name: {"description": tool.description or "", "input_schema": tool.input_schema}
                for name, tool in entry.tools.items()
            }
        }
        for entry in catalog.entries()
    }


def generate_helpers_source(
    catalog: AggregatedCatalog,
    aliases: Mapping[str, str] | None = None,
) -> str:
    """Render helper source for ``catalog``.

    ``aliases`` maps extra names onto existing server keys; aliases whose target
    is missing are dropped.
    """
    resolved: dict[str, str] = {}
    for alias, target in (aliases or {}).items():
        if not alias or not target:
            continue
        if target not in catalog:
            logger.debug("Dropping helper alias %r: no server %r", alias, target)
            continue
        resolved[alias] = target

    catalog_json = json.dumps(catalog_payload(catalog), sort_keys=True, separators=(",", ":"))
    aliases_json = json.dumps(resolved, sort_keys=True)
    return _HELPERS_TEMPLATE.substitute(
        version=HELPER_PROTOCOL_VERSION,
        staged_limit=STAGED_QUERY_LIMIT,
        catalog=repr(catalog_json),
        aliases=repr(aliases_json),
    )


def helpers_metadata(catalog: AggregatedCatalog) -> JSONObject:
    """Server keys with tool counts, for status displays and prompts."""
    servers: list[JSONObject] = [
        {"key": entry.key, "tool_count": len(entry.tools), "tool_names": list(entry.tools)}
        for entry in catalog.entries()
    ]
    return {"servers": servers, "total_tools": sum(len(entry.tools) for entry in catalog.entries())}
