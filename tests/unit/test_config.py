from __future__ import annotations

import json

import pytest

from toolbridge.config import DEFAULT_TOOL_TIMEOUT_MS, BridgeSettings
from toolbridge.mcp.models import TransportKind


def test_from_env_reads_values(monkeypatch: pytest.MonkeyPatch) -> None:
    servers = [{"url": "https://a.example/mcp", "transport": "sse", "name": "alpha"}]
    monkeypatch.setenv("TOOLBRIDGE_TOOL_TIMEOUT_MS", "45000")
    monkeypatch.setenv("TOOLBRIDGE_PROXY_TOKEN", "secret")
    monkeypatch.setenv("TOOLBRIDGE_SERVERS", json.dumps(servers))
    monkeypatch.setenv("TOOLBRIDGE_LOG_LEVEL", "debug")

    settings = BridgeSettings.from_env()

    assert settings.tool_timeout_ms == 45000
    assert settings.proxy_token == "secret"
    assert settings.log_level == "DEBUG"
    assert len(settings.servers) == 1
    assert settings.servers[0].name == "alpha"
    assert settings.servers[0].transport_hint is TransportKind.SSE


def test_from_env_ignores_invalid_numbers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOOLBRIDGE_TOOL_TIMEOUT_MS", "soon")
    assert BridgeSettings.from_env().tool_timeout_ms == DEFAULT_TOOL_TIMEOUT_MS

    monkeypatch.setenv("TOOLBRIDGE_TOOL_TIMEOUT_MS", "10")
    assert BridgeSettings.from_env().tool_timeout_ms == DEFAULT_TOOL_TIMEOUT_MS


def test_from_env_rejects_non_list_servers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOOLBRIDGE_SERVERS", json.dumps({"url": "https://a.example"}))
    with pytest.raises(ValueError, match="JSON list"):
        BridgeSettings.from_env()


def test_empty_proxy_token_disables_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOOLBRIDGE_PROXY_TOKEN", "")
    assert BridgeSettings.from_env().proxy_token is None
