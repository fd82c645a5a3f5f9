"""Codex CLI subprocess backend."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile

from taskrelay.adapters.base import InvokeOptions, StreamEvent, SubprocessBackend

logger = logging.getLogger(__name__)

REASONING_LEVELS = frozenset({"minimal", "low", "medium", "high", "xhigh"})


class CodexBackend(SubprocessBackend):
    """Runs ``codex exec --json`` and understands both of its event formats.

    Older releases wrap events as ``{"msg": {"type": ...}}``; newer ones emit
    ``thread.started`` / ``item.completed`` / ``turn.completed`` records.
    Codex sandboxes tool use itself, so the permission gateway is unused.
    """

    name = "codex"
    display_name = "Codex"
    supports_permission_gateway = False

    def __init__(self, binary: str = "codex") -> None:
        self._binary = binary

    def build_command(
        self,
        options: InvokeOptions,
        work_dir: str,
        stack: contextlib.ExitStack,
    ) -> list[str]:
        args = [self._binary, "exec", "--json", "--skip-git-repo-check"]
        if options.model:
            args += ["--model", options.model]
        if options.reasoning_level:
            if options.reasoning_level not in REASONING_LEVELS:
                logger.warning("Unknown codex reasoning level %r", options.reasoning_level)
            args += ["-c", f"model_reasoning_effort={options.reasoning_level}"]
        if options.search:
            args += ["-c", "tools.web_search=true"]
        if options.allow_all_tools:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args += ["--sandbox", "workspace-write"]
        if options.output_schema is not None:
            args += ["--output-schema", _write_schema(options.output_schema, stack)]
        args.append("-")
        return args

    def parse_line(self, line: str) -> list[StreamEvent]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON codex output: %s", line[:200])
            return []
        if not isinstance(data, dict):
            return []
        msg = data.get("msg")
        if isinstance(msg, dict):
            return _legacy_events(msg)
        return _item_events(data)


def _write_schema(schema: dict, stack: contextlib.ExitStack) -> str:
    fd, path = tempfile.mkstemp(prefix="taskrelay-schema-", suffix=".json")
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(schema, handle)
    stack.callback(_remove_quietly, path)
    return path


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError as exc:
        logger.debug("Could not remove schema file %s: %s", path, exc)


def _legacy_events(msg: dict) -> list[StreamEvent]:
    kind = msg.get("type")
    if kind == "task_started":
        return [StreamEvent("task_started")]
    if kind == "agent_message" and isinstance(msg.get("message"), str):
        return [StreamEvent("agent_message", text=msg["message"])]
    if kind == "patch_apply_begin":
        changes = msg.get("changes")
        if isinstance(changes, dict):
            return [StreamEvent("tool_invocation", paths=tuple(str(p) for p in changes))]
        return []
    if kind == "exec_command_begin":
        return [StreamEvent("tool_invocation")]
    if kind == "task_complete":
        last = msg.get("last_agent_message")
        return [StreamEvent("result", text=last if isinstance(last, str) else "")]
    return []


def _item_events(data: dict) -> list[StreamEvent]:
    kind = data.get("type")
    if kind == "thread.started":
        return [StreamEvent("task_started")]
    if kind == "turn.completed":
        return [StreamEvent("result")]
    if kind != "item.completed":
        return []
    item = data.get("item")
    if not isinstance(item, dict):
        return []
    item_type = item.get("item_type") or item.get("type")
    if item_type == "agent_message" and isinstance(item.get("text"), str):
        return [StreamEvent("agent_message", text=item["text"])]
    if item_type == "file_change":
        changes = item.get("changes")
        if isinstance(changes, list):
            paths = tuple(
                str(c["path"]) for c in changes if isinstance(c, dict) and c.get("path")
            )
            return [StreamEvent("tool_invocation", paths=paths)]
        return []
    if item_type == "command_execution":
        return [StreamEvent("tool_invocation")]
    return []
