"""Stdio MCP server that relays approval prompts to the permission gateway.

The agent CLI launches this module (see ``PermissionGateway``) and calls its
single tool, ``approval_prompt``, whenever a tool use is not covered by its
own allow list. Each call becomes a ``permission_request`` on the gateway's
Unix socket.

Usage: ``python -m taskrelay.permissions.mcp_server <socket-path>``
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Callable

from taskrelay import __version__
from taskrelay.protocol.models import PermissionRequest

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
TOOL_NAME = "approval_prompt"
DENIED_MESSAGE = "The user denied this tool use"
UNAVAILABLE_MESSAGE = "Permission gateway unavailable; tool use denied"

APPROVAL_TOOL = {
    "name": TOOL_NAME,
    "description": "Ask the operator whether a tool call may run.",
    "inputSchema": {
        "type": "object",
        "properties": {
            "tool_name": {"type": "string", "description": "Tool requesting permission"},
            "input": {"type": "object", "description": "Input of the tool call"},
            "tool_use_id": {"type": "string"},
        },
        "required": ["tool_name", "input"],
    },
}


class GatewayConnection:
    """Client side of the gateway socket protocol."""

    def __init__(self, socket_path: str) -> None:
        self._socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._pending: dict[str, asyncio.Future[bool]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_unix_connection(self._socket_path)
        self._reader_task = asyncio.create_task(self._read_responses())

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
        if self._writer is not None:
            self._writer.close()
        self._fail_pending()

    async def request_permission(self, tool_name: str, tool_input: dict[str, Any]) -> bool:
        """Ask the gateway; any transport failure counts as a denial."""
        if self._writer is None:
            return False
        request = PermissionRequest(uuid.uuid4().hex, tool_name, tool_input)
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = future
        try:
            async with self._write_lock:
                self._writer.write((json.dumps(request.to_wire()) + "\n").encode("utf-8"))
                await self._writer.drain()
            return await future
        except (ConnectionError, OSError) as exc:
            logger.debug("Permission request %s failed: %r", request.request_id, exc)
            return False
        finally:
            self._pending.pop(request.request_id, None)

    async def _read_responses(self) -> None:
        assert self._reader is not None
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(message, dict) or message.get("type") != "permission_response":
                    continue
                future = self._pending.get(str(message.get("requestId")))
                if future is not None and not future.done():
                    future.set_result(message.get("approved") is True)
        except (ConnectionError, OSError) as exc:
            logger.debug("Gateway connection lost: %r", exc)
        finally:
            self._fail_pending()

    def _fail_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_result(False)


class ApprovalServer:
    """JSON-RPC 2.0 handling for the MCP methods this server supports."""

    def __init__(self, ask: Callable[[str, dict[str, Any]], Any]) -> None:
        self._ask = ask

    async def handle(self, message: dict[str, Any]) -> dict[str, Any] | None:
        method = message.get("method")
        msg_id = message.get("id")
        params = message.get("params") or {}
        if msg_id is None:
            # Notifications (e.g. notifications/initialized) need no reply.
            return None

        if method == "initialize":
            result: dict[str, Any] = {
                "protocolVersion": params.get("protocolVersion", PROTOCOL_VERSION),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "taskrelay-permissions", "version": __version__},
            }
        elif method == "ping":
            result = {}
        elif method == "tools/list":
            result = {"tools": [APPROVAL_TOOL]}
        elif method == "tools/call":
            if params.get("name") != TOOL_NAME:
                return _error(msg_id, -32602, f"Unknown tool: {params.get('name')}")
            result = await self._call_approval(params.get("arguments") or {})
        else:
            return _error(msg_id, -32601, f"Method not found: {method}")
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}

    async def _call_approval(self, arguments: dict[str, Any]) -> dict[str, Any]:
        tool_name = str(arguments.get("tool_name", ""))
        tool_input = arguments.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}
        approved = await self._ask(tool_name, tool_input)
        if approved:
            payload = {"behavior": "allow", "updatedInput": tool_input}
        else:
            payload = {"behavior": "deny", "message": f"{DENIED_MESSAGE}: {tool_name}"}
        return {"content": [{"type": "text", "text": json.dumps(payload)}]}


def _error(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}


async def serve(socket_path: str) -> None:
    connection = GatewayConnection(socket_path)
    try:
        await connection.connect()
    except OSError as exc:
        logger.warning("%s: %s", UNAVAILABLE_MESSAGE, exc)

    server = ApprovalServer(connection.request_permission)
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    tasks: set[asyncio.Task[None]] = set()

    async def _dispatch(message: dict[str, Any]) -> None:
        reply = await server.handle(message)
        if reply is not None:
            sys.stdout.write(json.dumps(reply) + "\n")
            sys.stdout.flush()

    try:
        while True:
            line = await reader.readline()
            if not line:
                break
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Ignoring malformed JSON-RPC line")
                continue
            if isinstance(message, dict):
                task = asyncio.create_task(_dispatch(message))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        await connection.close()


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m taskrelay.permissions.mcp_server <socket-path>", file=sys.stderr)
        return 2
    asyncio.run(serve(args[0]))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
