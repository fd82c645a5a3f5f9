"""Claude Code subprocess backend."""

from __future__ import annotations

import contextlib
import json
import logging

from taskrelay.adapters.base import InvokeOptions, StreamEvent, SubprocessBackend

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_MODEL = "opus"
KNOWN_MODEL_FAMILIES = ("haiku", "sonnet", "opus")
PERMISSION_PROMPT_TOOL = "mcp__permissions__approval_prompt"

FILE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})


def resolve_model(model: str | None) -> str:
    if model and any(family in model for family in KNOWN_MODEL_FAMILIES):
        return model
    if model:
        logger.info("Model %r is not a Claude model; using %s", model, DEFAULT_CLAUDE_MODEL)
    return DEFAULT_CLAUDE_MODEL


class ClaudeBackend(SubprocessBackend):
    name = "claude"
    display_name = "Claude"
    supports_permission_gateway = True

    def __init__(self, binary: str = "claude") -> None:
        self._binary = binary

    def build_command(
        self,
        options: InvokeOptions,
        work_dir: str,
        stack: contextlib.ExitStack,
    ) -> list[str]:
        args = [self._binary, "-p", "--no-session-persistence"]
        if options.mcp_config_path:
            args += ["--mcp-config", options.mcp_config_path]
            args += ["--permission-prompt-tool", PERMISSION_PROMPT_TOOL]
        if options.allow_all_tools:
            args.append("--dangerously-skip-permissions")
        elif options.allowed_tools:
            args += ["--allowedTools", ",".join(options.allowed_tools)]
        if options.disallowed_tools:
            args += ["--disallowedTools", ",".join(options.disallowed_tools)]
        args += ["--model", resolve_model(options.model)]
        args += ["--verbose", "--output-format", "stream-json"]
        if options.output_schema is not None:
            args += ["--json-schema", json.dumps(options.output_schema)]
        return args

    def parse_line(self, line: str) -> list[StreamEvent]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON claude output: %s", line[:200])
            return []
        if not isinstance(data, dict):
            return []

        kind = data.get("type")
        if kind == "system" and data.get("subtype") == "init":
            return [StreamEvent("task_started")]
        if kind == "assistant":
            return _assistant_events(data.get("message"))
        if kind == "result":
            text = data.get("result")
            structured = data.get("structured_output")
            if isinstance(structured, str):
                text = structured
            elif structured is not None:
                text = json.dumps(structured)
            return [StreamEvent("result", text=text if isinstance(text, str) else "")]
        return []


def _assistant_events(message: object) -> list[StreamEvent]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [StreamEvent("agent_message", text=content)]
    if not isinstance(content, list):
        return []

    events: list[StreamEvent] = []
    texts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        elif block.get("type") == "tool_use" and block.get("name") in FILE_TOOLS:
            tool_input = block.get("input")
            if not isinstance(tool_input, dict):
                continue
            path = tool_input.get("file_path") or tool_input.get("notebook_path")
            if isinstance(path, str) and path:
                events.append(StreamEvent("tool_invocation", paths=(path,)))
    if texts:
        events.insert(0, StreamEvent("agent_message", text="\n".join(texts)))
    return events
