"""Tests for the approval MCP bridge."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from taskrelay.permissions.gateway import PermissionGateway
from taskrelay.permissions.mcp_server import (
    APPROVAL_TOOL,
    PROTOCOL_VERSION,
    TOOL_NAME,
    ApprovalServer,
    GatewayConnection,
    main,
)
from taskrelay.permissions.rules import AllowRuleSet


def _server(approved: bool, calls: list[tuple[str, dict[str, Any]]] | None = None) -> ApprovalServer:
    async def ask(tool_name: str, tool_input: dict[str, Any]) -> bool:
        if calls is not None:
            calls.append((tool_name, tool_input))
        return approved

    return ApprovalServer(ask)


def _call(arguments: dict[str, Any], name: str = TOOL_NAME) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": {"name": name, "arguments": arguments}}


class TestApprovalServer:
    @pytest.mark.asyncio
    async def test_initialize(self) -> None:
        reply = await _server(True).handle({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})
        assert reply is not None
        assert reply["result"]["protocolVersion"] == PROTOCOL_VERSION
        assert reply["result"]["serverInfo"]["name"] == "taskrelay-permissions"

    @pytest.mark.asyncio
    async def test_tools_list(self) -> None:
        reply = await _server(True).handle({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
        assert reply is not None
        assert reply["result"]["tools"] == [APPROVAL_TOOL]

    @pytest.mark.asyncio
    async def test_notifications_get_no_reply(self) -> None:
        assert await _server(True).handle({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None

    @pytest.mark.asyncio
    async def test_allow_returns_updated_input(self) -> None:
        calls: list[tuple[str, dict[str, Any]]] = []
        reply = await _server(True, calls).handle(_call({"tool_name": "Bash", "input": {"command": "ls"}}))
        assert reply is not None
        payload = json.loads(reply["result"]["content"][0]["text"])
        assert payload == {"behavior": "allow", "updatedInput": {"command": "ls"}}
        assert calls == [("Bash", {"command": "ls"})]

    @pytest.mark.asyncio
    async def test_deny_carries_message(self) -> None:
        reply = await _server(False).handle(_call({"tool_name": "WebFetch", "input": {"url": "u"}}))
        assert reply is not None
        payload = json.loads(reply["result"]["content"][0]["text"])
        assert payload["behavior"] == "deny"
        assert "WebFetch" in payload["message"]

    @pytest.mark.asyncio
    async def test_unknown_tool_and_method(self) -> None:
        server = _server(True)
        unknown_tool = await server.handle(_call({}, name="other"))
        unknown_method = await server.handle({"jsonrpc": "2.0", "id": 3, "method": "resources/list"})
        assert unknown_tool is not None and unknown_tool["error"]["code"] == -32602
        assert unknown_method is not None and unknown_method["error"]["code"] == -32601


class TestGatewayConnection:
    @pytest.mark.asyncio
    async def test_round_trip_through_gateway(self, tmp_path: Path) -> None:
        rules = AllowRuleSet.from_tool_specs(["Edit"])
        async with PermissionGateway(rules, None, work_dir=str(tmp_path)) as gateway:
            connection = GatewayConnection(str(gateway.socket_path))
            await connection.connect()
            try:
                assert await connection.request_permission("Edit", {"file_path": "a.py"}) is True
                assert await connection.request_permission("WebFetch", {"url": "u"}) is False
            finally:
                await connection.close()

    @pytest.mark.asyncio
    async def test_unconnected_denies(self) -> None:
        connection = GatewayConnection("/nonexistent/socket")
        assert await connection.request_permission("Edit", {}) is False


def test_main_requires_socket_path(capsys) -> None:  # type: ignore[no-untyped-def]
    assert main([]) == 2
    assert "usage" in capsys.readouterr().err
