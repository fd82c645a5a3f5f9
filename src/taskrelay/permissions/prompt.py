"""Interactive approval prompt for tool permission requests."""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, TextIO

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from taskrelay.permissions.rules import BASH_TOOL_NAME
from taskrelay.protocol.models import PermissionRequest
from taskrelay.safety.bash_policy import CommandRisk, classify_command

MAX_INPUT_PREVIEW = 500

_RISK_STYLES = {
    CommandRisk.SAFE: "green",
    CommandRisk.WARN: "yellow",
    CommandRisk.BLOCK: "bold red",
}


class PermissionChoice(StrEnum):
    ALLOW = "allow"
    SESSION_ALLOW = "session_allow"
    ALWAYS_ALLOW = "always_allow"
    DISALLOW = "disallow"

    @property
    def approved(self) -> bool:
        return self is not PermissionChoice.DISALLOW


@dataclass(slots=True, frozen=True)
class PermissionDecision:
    """Operator answer; ``prefix`` narrows a Bash rule when one is recorded."""

    choice: PermissionChoice
    prefix: str | None = None

    @property
    def approved(self) -> bool:
        return self.choice.approved


class PermissionPrompter(Protocol):
    async def prompt(self, request: PermissionRequest) -> PermissionDecision: ...


_ANSWERS: dict[str, PermissionChoice] = {
    "a": PermissionChoice.ALLOW,
    "allow": PermissionChoice.ALLOW,
    "y": PermissionChoice.ALLOW,
    "s": PermissionChoice.SESSION_ALLOW,
    "session": PermissionChoice.SESSION_ALLOW,
    "w": PermissionChoice.ALWAYS_ALLOW,
    "always": PermissionChoice.ALWAYS_ALLOW,
    "d": PermissionChoice.DISALLOW,
    "n": PermissionChoice.DISALLOW,
    "disallow": PermissionChoice.DISALLOW,
}


def format_tool_input(tool_input: dict) -> str:
    text = json.dumps(tool_input, indent=2, default=str)
    if len(text) > MAX_INPUT_PREVIEW:
        text = text[:MAX_INPUT_PREVIEW] + "..."
    return text


def render_request(request: PermissionRequest) -> Panel:
    body = Text()
    body.append("Tool: ", style="bold")
    body.append(request.tool_name, style="blue")
    body.append("\n")
    command = request.input.get("command")
    if request.tool_name == BASH_TOOL_NAME and isinstance(command, str):
        classification = classify_command(command)
        body.append("Risk: ", style="bold")
        body.append(classification.risk.value, style=_RISK_STYLES[classification.risk])
        if classification.reason:
            body.append(f" ({classification.reason})", style="dim")
        body.append("\n")
    body.append("Input:\n", style="bold")
    body.append(format_tool_input(request.input))
    return Panel(body, title="Agent permission request", border_style="yellow")


class ConsolePrompter:
    """Asks the operator on the controlling terminal.

    Reads are registered with the event loop rather than run in a thread, so
    cancelling ``prompt()`` really stops waiting for input.
    """

    def __init__(self, console: Console | None = None, stream: TextIO | None = None) -> None:
        self._console = console or Console(stderr=True)
        self._stream = stream or sys.stdin

    async def prompt(self, request: PermissionRequest) -> PermissionDecision:
        self._console.bell()
        self._console.print(render_request(request))
        while True:
            answer = await self._read_line(
                "Allow this tool? [a]llow / [s]ession / al[w]ays / [d]isallow: "
            )
            choice = _ANSWERS.get(answer.lower())
            if choice is not None:
                break
            self._console.print(f"[red]Unrecognised answer {answer!r}[/red]")

        prefix = None
        command = request.input.get("command")
        if request.tool_name == BASH_TOOL_NAME and isinstance(command, str):
            if choice is PermissionChoice.ALWAYS_ALLOW:
                entered = await self._read_line(f"Command prefix to always allow [{command}]: ")
                prefix = entered or command
            elif choice is PermissionChoice.SESSION_ALLOW:
                prefix = command.split(" ")[0]
        return PermissionDecision(choice, prefix)

    async def _read_line(self, message: str) -> str:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        fd = self._stream.fileno()

        def _on_readable() -> None:
            if not future.done():
                future.set_result(self._stream.readline())

        self._console.print(message, end="", markup=False)
        loop.add_reader(fd, _on_readable)
        try:
            line = await future
        finally:
            loop.remove_reader(fd)
        if line == "":
            raise EOFError("stdin closed while waiting for a permission answer")
        return line.strip()
