"""Size-bounded descriptions of the helper API for prompt embedding."""

from __future__ import annotations

import keyword
import math
from collections.abc import Mapping
from typing import Any

from toolbridge.mcp.catalog import AggregatedCatalog, ServerEntry
from toolbridge.mcp.models import ToolDefinition

COMPACT_MAX_TOOLS = 8
MINIMAL_TOP_TOOLS = 5
_DESCRIPTION_CHARS = 60

_JSON_TO_PYTHON = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "null": "None",
}


def compact_params(schema: Mapping[str, Any]) -> str:
    """``query, limit?``; more than three parameters collapse to ``a, b, +K more``."""
    properties = schema.get("properties")
    if not isinstance(properties, Mapping) or not properties:
        return ""
    required = schema.get("required")
    required_names = set(required) if isinstance(required, list) else set()
    params = [name if name in required_names else f"{name}?" for name in properties]
    if len(params) <= 3:
        return ", ".join(params)
    return f"{', '.join(params[:2])}, +{len(params) - 2} more"


def short_description(description: str | None) -> str:
    if not description:
        return ""
    return description.split(".")[0].strip()[:_DESCRIPTION_CHARS]


def is_attribute_name(name: str) -> bool:
    """Whether ``name`` can follow a dot in generated code."""
    return name.isidentifier() and not keyword.iskeyword(name)


def server_ref(key: str) -> str:
    return f"helpers.{key}" if is_attribute_name(key) else f'helpers["{key}"]'


def stub_class_name(key: str) -> str:
    name = f"{key.capitalize()}Helpers"
    return name if name.isidentifier() else f"Server{name}"


def _signature(tool: ToolDefinition) -> str:
    params = compact_params(tool.input_schema)
    if is_attribute_name(tool.name):
        return f".{tool.name}({params})"
    return f'.invoke("{tool.name}", {{{params}}})'


def generate_compact_docs(catalog: AggregatedCatalog, max_tools: int = COMPACT_MAX_TOOLS) -> str:
    """Top ``max_tools`` signatures per server as Python comments."""
    lines = [
        "# Helper API: await helpers.<server>.<tool>(**args)"
        ' or await helpers.<server>.invoke("<tool>", args)',
        "",
    ]
    for entry in catalog.entries():
        tools = list(entry.tools.values())
        lines.append(f"# {server_ref(entry.key)} ({len(tools)} tools)")
        for tool in tools[:max_tools]:
            description = short_description(tool.description)
            suffix = f"  # {description}" if description else ""
            lines.append(f"#   {_signature(tool)}{suffix}")
        hidden = len(tools) - max_tools
        if hidden > 0:
            lines.append(f"#   ... +{hidden} more tools (use list_tools() to see all)")
        lines.append("")
    lines.append(
        "# All helpers support: .list_tools(), .search_tools(query), .get_tool_schema(name),"
        " .invoke(name, args), .get_data(name, args)"
    )
    return "\n".join(lines)


def generate_minimal_docs(catalog: AggregatedCatalog) -> str:
    """One line per server: tool count and the first few names."""
    lines = [
        "## Code Mode API",
        "",
        "Run Python against the configured tool servers through `helpers`.",
        "",
        "### Quick Reference",
        "",
    ]
    ordered = sorted(catalog.entries(), key=lambda entry: len(entry.tools), reverse=True)
    for entry in ordered:
        names = sorted(entry.tools)
        top = ", ".join(names[:MINIMAL_TOP_TOOLS])
        more = f" +{len(names) - MINIMAL_TOP_TOOLS} more" if len(names) > MINIMAL_TOP_TOOLS else ""
        lines.append(f"- **{server_ref(entry.key)}** ({len(names)} tools): {top}{more}")
    lines.extend(
        [
            "",
            "### Usage",
            "```python",
            'data = await helpers.server.get_data("tool_name", {"arg": "value"})',
            'schema = helpers.server.get_tool_schema("tool_name")',
            "```",
        ]
    )
    return "\n".join(lines)


def python_type_hint(schema: Any) -> str:
    """Best-effort Python annotation for a JSON schema fragment."""
    if not isinstance(schema, Mapping):
        return "Any"
    enum = schema.get("enum")
    if isinstance(enum, list) and enum:
        return f"Literal[{', '.join(repr(option) for option in enum)}]"
    kind = schema.get("type")
    if isinstance(kind, list):
        return " | ".join(_JSON_TO_PYTHON.get(str(item), "Any") for item in kind) or "Any"
    if kind == "array":
        return f"list[{python_type_hint(schema.get('items'))}]"
    if kind == "object":
        return "dict[str, Any]"
    return _JSON_TO_PYTHON.get(str(kind), "Any")


def _typed_stub(tool: ToolDefinition) -> list[str]:
    properties = tool.input_schema.get("properties")
    properties = properties if isinstance(properties, Mapping) else {}
    required = tool.input_schema.get("required")
    required_names = set(required) if isinstance(required, list) else set()
    params = []
    for name, prop in properties.items():
        if not is_attribute_name(str(name)):
            continue
        hint = python_type_hint(prop)
        params.append(f"{name}: {hint}" if name in required_names else f"{name}: {hint} = None")
    signature = f"self, *, {', '.join(params)}" if params else "self"
    lines = [f"    async def {tool.name}({signature}) -> Any:"]
    description = short_description(tool.description).replace("\\", "\\\\").replace('"', '\\"')
    lines.append(f'        """{description}"""' if description else "        ...")
    return lines


def generate_server_stub(entry: ServerEntry) -> str:
    """Typed method stubs for one server's identifier-safe tool names."""
    lines = [f"class {stub_class_name(entry.key)}:"]
    tools = [tool for tool in entry.tools.values() if is_attribute_name(tool.name)]
    if not tools:
        lines.append("    ...")
    for tool in tools:
        lines.extend(_typed_stub(tool))
    return "\n".join(lines)


def generate_typed_docs(catalog: AggregatedCatalog) -> str:
    """Full typed stubs; much larger than the compact variant."""
    blocks = ["from typing import Any, Literal"]
    blocks.extend(generate_server_stub(entry) for entry in catalog.entries())
    return "\n\n\n".join(blocks) + "\n"


def estimate_doc_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)
