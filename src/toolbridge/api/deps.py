"""Shared API dependency providers."""

from __future__ import annotations

import asyncio

from toolbridge.config import BridgeSettings
from toolbridge.mcp.bridge import ToolBridge, initialize
from toolbridge.mcp.registry import BridgeState

_SETTINGS = BridgeSettings.from_env()
_BRIDGE_STATE = BridgeState(settings=_SETTINGS)
_PROXY_SESSIONS: dict[str, ToolBridge] = {}
_PROXY_LOCK = asyncio.Lock()


def get_settings() -> BridgeSettings:
    return _SETTINGS


def get_bridge_state() -> BridgeState:
    return _BRIDGE_STATE


async def get_proxy_bridge() -> ToolBridge:
    """Shared session over the configured servers, rebuilt after it closes."""
    async with _PROXY_LOCK:
        bridge = _PROXY_SESSIONS.get("default")
        if bridge is None or bridge.closed:
            bridge = await initialize(_SETTINGS.servers, state=_BRIDGE_STATE)
            _PROXY_SESSIONS["default"] = bridge
        return bridge


async def shutdown() -> None:
    """Close the shared session and every pooled connection."""
    for bridge in list(_PROXY_SESSIONS.values()):
        await bridge.cleanup()
    _PROXY_SESSIONS.clear()
    await _BRIDGE_STATE.aclose()
