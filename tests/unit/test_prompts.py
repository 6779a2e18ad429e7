from __future__ import annotations

import pytest

from tests.support.bridge_fakes import FakeServer, make_state
from toolbridge.mcp.prompts import (
    complete_prompt_argument,
    coerce_prompt_args,
    normalize_prompt_messages,
    render_content,
    resolve_prompt,
)

URL = "https://docs.example.com/mcp/docs"


@pytest.mark.parametrize(
    ("block", "expected"),
    [
        ({"type": "text", "text": "hello"}, "hello"),
        ({"type": "resource", "resource": {"uri": "file:///a.md"}}, "[resource file:///a.md]"),
        ({"type": "image", "data": "aGk=", "mimeType": "image/png"}, "[image inline]"),
        ({"type": "image", "url": "https://img.example/a"}, "[image https://img.example/a]"),
        ({"type": "audio"}, "[audio]"),
        ({"type": "file", "path": "/tmp/report.csv"}, "[file /tmp/report.csv]"),
        ({"type": "tool_result", "result": {"name": "find"}}, "[tool find]"),
        ({"type": "resource_link"}, "[resource_link]"),
        ("not a block", ""),
    ],
)
def test_render_content(block: object, expected: str) -> None:
    assert render_content(block) == expected


def test_normalize_prompt_messages_joins_blocks() -> None:
    messages = normalize_prompt_messages(
        [
            {"role": "assistant", "content": "plain"},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Summarize"},
                    {"type": "resource", "resource": {"uri": "doc://1"}},
                ],
            },
            {"content": {"type": "text", "text": "single"}},
            "skipped",
        ]
    )

    assert [(message.role, message.text) for message in messages] == [
        ("assistant", "plain"),
        ("user", "Summarize\n[resource doc://1]"),
        ("user", "single"),
    ]


def test_coerce_prompt_args_stringifies_values() -> None:
    assert coerce_prompt_args({"n": 3, "flag": True, "empty": None}) == {
        "n": "3",
        "flag": "True",
        "empty": "",
    }
    assert coerce_prompt_args(None) == {}


@pytest.mark.asyncio
async def test_resolve_prompt_returns_messages_and_closes_connection() -> None:
    server = FakeServer(
        prompt_messages={"brief": [{"role": "user", "content": {"type": "text", "text": "Hi"}}]}
    )
    state, factory = make_state({URL: server})

    resolution = await resolve_prompt(URL, "http", "brief", args={"topic": 1}, state=state)

    assert resolution.ok
    assert resolution.description == "brief prompt"
    assert resolution.messages[0].text == "Hi"
    assert factory.sessions[0].prompt_requests == [("brief", {"topic": "1"})]
    assert factory.live_sessions() == []
    assert len(state.pool) == 0


@pytest.mark.asyncio
async def test_resolve_prompt_reports_server_errors() -> None:
    state, factory = make_state({URL: FakeServer()})

    resolution = await resolve_prompt(URL, "sse", "missing", state=state)

    assert not resolution.ok
    assert resolution.error == "Unknown prompt: missing"
    assert resolution.to_dict()["messages"] == []
    assert factory.live_sessions() == []


@pytest.mark.asyncio
async def test_resolve_prompt_reports_connection_failure() -> None:
    state, _ = make_state({})

    resolution = await resolve_prompt(URL, None, "brief", state=state)

    assert resolution.error is not None
    assert resolution.error.startswith("Connection failed")


@pytest.mark.asyncio
async def test_complete_prompt_argument_returns_values() -> None:
    server = FakeServer(completions={"language": ["python", "perl", "php", "rust"]})
    state, factory = make_state({URL: server})

    completion = await complete_prompt_argument(
        URL, "http", "review", "language", "p", context_args={"repo": 7}, state=state
    )

    assert completion.error is None
    assert completion.values == ["python", "perl"]
    assert completion.has_more
    assert completion.total == 3
    ref, argument, context = factory.sessions[0].completion_requests[0]
    assert (ref.type, ref.name) == ("ref/prompt", "review")
    assert argument == {"name": "language", "value": "p"}
    assert context == {"repo": "7"}
    assert factory.live_sessions() == []
    assert len(state.pool) == 0


@pytest.mark.asyncio
async def test_complete_prompt_argument_reports_unsupported_servers() -> None:
    state, factory = make_state({URL: FakeServer()})

    completion = await complete_prompt_argument(URL, "sse", "review", "language", state=state)

    assert completion.to_dict() == {
        "values": [],
        "hasMore": False,
        "total": 0,
        "error": "Method not found",
    }
    assert factory.sessions[0].completion_requests[0][1] == {"name": "language", "value": ""}
    assert factory.live_sessions() == []


@pytest.mark.asyncio
async def test_complete_prompt_argument_reports_connection_failure() -> None:
    state, _ = make_state({})

    completion = await complete_prompt_argument(URL, None, "review", "language", state=state)

    assert completion.values == []
    assert completion.error is not None
    assert completion.error.startswith("Connection failed")
