"""Permission gateway: a Unix-socket server answering agent tool requests.

The agent CLI is pointed at a small MCP bridge (``taskrelay.permissions.
mcp_server``) which forwards every permission check over the socket as one
JSON line::

    {"type": "permission_request", "requestId": "...", "tool_name": "Bash",
     "input": {"command": "rm build/out.txt"}}

and expects ``{"type": "permission_response", "requestId": "...",
"approved": true}`` back. Requests are resolved in this order:

1. the tool is always allowed;
2. a Bash command starts with an allowed prefix;
3. (optional) a Bash ``rm`` whose every target was created or edited by the
   current run;
4. the operator is asked, with an optional timeout after which the
   configured default applies.

Several requests may be in flight at once. Each is answered independently,
keyed only by ``requestId``, and the operator sees one prompt at a time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any

from taskrelay.permissions.prompt import (
    PermissionChoice,
    PermissionDecision,
    PermissionPrompter,
)
from taskrelay.permissions.rules import BASH_TOOL_NAME, AllowRuleSet, format_bash_rule
from taskrelay.permissions.store import PermissionStore
from taskrelay.protocol.models import PermissionRequest, PermissionResponse
from taskrelay.safety.bash_policy import parse_delete_command

logger = logging.getLogger(__name__)

SOCKET_NAME = "permissions.sock"
MCP_CONFIG_NAME = "mcp-config.json"
MCP_SERVER_NAME = "permissions"
CLOSE_TIMEOUT_S = 5.0


class PermissionGateway:
    """Per-run permission server. Use as an async context manager."""

    def __init__(
        self,
        rules: AllowRuleSet,
        prompter: PermissionPrompter | None,
        *,
        work_dir: str,
        tracked_files: set[str] | None = None,
        store: PermissionStore | None = None,
        prompt_timeout: float | None = None,
        default_approve: bool = False,
        auto_approve_created_file_deletion: bool = False,
    ) -> None:
        self.rules = rules
        self._prompter = prompter
        self._work_dir = work_dir
        self._tracked_files = tracked_files if tracked_files is not None else set()
        self._store = store
        self._prompt_timeout = prompt_timeout
        self._default_approve = default_approve
        self._auto_delete = auto_approve_created_file_deletion

        self._server: asyncio.AbstractServer | None = None
        self._temp_dir: Path | None = None
        self._decisions: dict[str, asyncio.Task[bool]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._writers: set[asyncio.StreamWriter] = set()
        self._prompt_lock = asyncio.Lock()
        self.prompt_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def socket_path(self) -> Path:
        if self._temp_dir is None:
            raise RuntimeError("permission gateway is not running")
        return self._temp_dir / SOCKET_NAME

    @property
    def mcp_config_path(self) -> Path:
        if self._temp_dir is None:
            raise RuntimeError("permission gateway is not running")
        return self._temp_dir / MCP_CONFIG_NAME

    async def __aenter__(self) -> "PermissionGateway":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        self._temp_dir = Path(tempfile.mkdtemp(prefix="taskrelay-perms-"))
        try:
            self._server = await asyncio.start_unix_server(
                self._handle_client, path=str(self.socket_path)
            )
            self._write_mcp_config()
        except OSError:
            await self.close()
            raise
        logger.debug("Permission gateway listening on %s", self.socket_path)

    def _write_mcp_config(self) -> None:
        config = {
            "mcpServers": {
                MCP_SERVER_NAME: {
                    "type": "stdio",
                    "command": sys.executable,
                    "args": ["-m", "taskrelay.permissions.mcp_server", str(self.socket_path)],
                }
            }
        }
        self.mcp_config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")

    async def close(self) -> None:
        """Stop listening, drop connections and remove the temp directory.

        Never raises; teardown problems are logged.
        """
        server, self._server = self._server, None
        if server is not None:
            server.close()
        for writer in list(self._writers):
            writer.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if server is not None:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=CLOSE_TIMEOUT_S)
            except (TimeoutError, OSError) as exc:
                logger.debug("Permission socket did not close cleanly: %r", exc)
        temp_dir, self._temp_dir = self._temp_dir, None
        if temp_dir is not None:
            try:
                shutil.rmtree(temp_dir)
            except OSError as exc:
                logger.debug("Could not remove permission temp dir %s: %s", temp_dir, exc)
        self._decisions.clear()

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Socket protocol
    # ------------------------------------------------------------------

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        write_lock = asyncio.Lock()
        pending: set[asyncio.Task[Any]] = set()
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                request = _decode_request(line)
                if request is None:
                    continue
                task = self._spawn(self._respond(request, writer, write_lock))
                pending.add(task)
                task.add_done_callback(pending.discard)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("Permission client disconnected: %r", exc)
        finally:
            self._writers.discard(writer)
            writer.close()

    async def _respond(
        self,
        request: PermissionRequest,
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
    ) -> None:
        try:
            approved = await self.resolve(request)
        except Exception:
            logger.exception("Permission decision for %s failed; denying", request.request_id)
            approved = False
        payload = json.dumps(PermissionResponse(request.request_id, approved).to_wire()) + "\n"
        try:
            async with write_lock:
                writer.write(payload.encode("utf-8"))
                await writer.drain()
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("Could not deliver permission response %s: %r", request.request_id, exc)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def resolve(self, request: PermissionRequest) -> bool:
        """Return whether *request* is approved.

        Repeated request ids share the first decision instead of prompting
        again.
        """
        decision = self._decisions.get(request.request_id)
        if decision is None:
            decision = self._spawn(self._decide(request))
            self._decisions[request.request_id] = decision
        return await asyncio.shield(decision)

    async def _decide(self, request: PermissionRequest) -> bool:
        if self._auto_approved(request):
            return True
        async with self._prompt_lock:
            # An answer given while this request waited may now cover it.
            if self._auto_approved(request):
                return True
            decision = await self._ask(request)
            await self._record(request, decision)
        if not decision.approved:
            logger.info("Denied %s request %s", request.tool_name, request.request_id)
        return decision.approved

    def _auto_approved(self, request: PermissionRequest) -> bool:
        if self.rules.is_allowed(request.tool_name, request.input):
            logger.debug("Auto-approved %s via allow rules", request.tool_name)
            return True
        if not self._auto_delete or request.tool_name != BASH_TOOL_NAME:
            return False
        command = request.input.get("command")
        if not isinstance(command, str):
            return False
        targets = parse_delete_command(command, self._work_dir)
        if targets and all(t in self._tracked_files for t in targets):
            logger.info("Auto-approved deletion of %d file(s) created by this run", len(targets))
            return True
        return False

    def _default_decision(self) -> PermissionDecision:
        return PermissionDecision(
            PermissionChoice.ALLOW if self._default_approve else PermissionChoice.DISALLOW
        )

    async def _ask(self, request: PermissionRequest) -> PermissionDecision:
        if self._prompter is None:
            return self._default_decision()

        self.prompt_count += 1
        prompt_task = asyncio.create_task(self._prompter.prompt(request))
        waiters: set[asyncio.Task[Any]] = {prompt_task}
        timer: asyncio.Task[Any] | None = None
        if self._prompt_timeout is not None:
            timer = asyncio.create_task(asyncio.sleep(self._prompt_timeout))
            waiters.add(timer)
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if prompt_task in done:
            error = prompt_task.exception()
            if error is None:
                return prompt_task.result()
            logger.warning("Permission prompt failed (%r); denying %s", error, request.tool_name)
            return PermissionDecision(PermissionChoice.DISALLOW)

        default = self._default_decision()
        logger.warning(
            "Permission prompt timed out after %gs, using default: %s",
            self._prompt_timeout,
            "yes" if default.approved else "no",
        )
        return default

    async def _record(self, request: PermissionRequest, decision: PermissionDecision) -> None:
        if decision.choice not in (PermissionChoice.SESSION_ALLOW, PermissionChoice.ALWAYS_ALLOW):
            return
        command = request.input.get("command")
        is_bash = request.tool_name == BASH_TOOL_NAME and isinstance(command, str)

        if decision.choice is PermissionChoice.SESSION_ALLOW:
            if is_bash:
                self.rules.add_bash_prefix(decision.prefix or command.split(" ")[0])
            else:
                self.rules.add_tool(request.tool_name)
            return

        if is_bash:
            prefix = decision.prefix or command
            self.rules.add_bash_prefix(prefix)
            rule = format_bash_rule(prefix)
        else:
            self.rules.add_tool(request.tool_name)
            rule = request.tool_name
        if self._store is None:
            return
        try:
            await asyncio.to_thread(self._store.persist_allow, rule)
        except Exception:
            logger.exception("Could not persist permission rule %s; it applies for this session only", rule)


def _decode_request(line: bytes) -> PermissionRequest | None:
    try:
        message = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("Ignoring malformed permission message: %r", line[:200])
        return None
    if not isinstance(message, dict) or message.get("type") != "permission_request":
        return None
    if "requestId" not in message:
        logger.debug("Ignoring permission request without requestId")
        return None
    return PermissionRequest.from_wire(message)
