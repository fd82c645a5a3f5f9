"""Bash command inspection for the permission gateway.

Parses deletion commands so that an agent may remove files it created
itself, and classifies commands by risk for display in the approval prompt.
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass
from enum import StrEnum

DELETE_COMMANDS = frozenset({"rm"})

# Any of these makes the target list unknowable without running a shell.
GLOB_CHARS = frozenset("*?[")
SHELL_OPERATORS = (";", "&&", "||", "|", ">", "<", "&", "$(", "`", "\n")
EXPANSION_CHARS = frozenset("$")


class CommandRisk(StrEnum):
    """Risk level of a bash command."""

    SAFE = "safe"
    WARN = "warn"
    BLOCK = "block"


@dataclass(slots=True)
class CommandClassification:
    """Classification of a bash command."""

    risk: CommandRisk
    reason: str = ""
    command: str = ""


SAFE_PREFIXES = (
    "ls", "cat ", "head ", "tail ", "wc ", "pwd",
    "git status", "git log", "git diff", "git show",
    "grep ", "rg ", "find ",
)

BLOCKED_PATTERNS = [
    r"rm\s+-\w*r\w*\s+/(?:\s|$)",
    r"rm\s+-\w*r\w*\s+~",
    r"rm\s+-\w*r\w*\s+\$HOME",
    r"mkfs\.",
    r"dd\s+if=.+of=/dev/",
    r"curl\s+.*\|\s*(?:bash|sh|zsh)",
    r"wget\s+.*\|\s*(?:bash|sh|zsh)",
    r"sudo\s+rm",
    r"git\s+push\s+.*--force",
]

WARN_PATTERNS = [
    r"\brm\b",
    r"\bsudo\b",
    r"\bchmod\b",
    r"\bchown\b",
    r"\bkill\b",
    r"\bgit\s+push",
    r"\bgit\s+reset",
    r"\bgit\s+clean",
    r"\bnpm\s+publish",
]

_blocked_re = [re.compile(p) for p in BLOCKED_PATTERNS]
_warn_re = [re.compile(p) for p in WARN_PATTERNS]


def classify_command(command: str) -> CommandClassification:
    """Classify a bash command by risk level."""
    stripped = command.strip()
    if not stripped:
        return CommandClassification(risk=CommandRisk.SAFE, command=command)

    for pattern in _blocked_re:
        if pattern.search(stripped):
            return CommandClassification(
                risk=CommandRisk.BLOCK,
                reason=f"Dangerous command pattern: {pattern.pattern}",
                command=command,
            )

    if not any(op in stripped for op in SHELL_OPERATORS):
        for prefix in SAFE_PREFIXES:
            if stripped.startswith(prefix):
                return CommandClassification(risk=CommandRisk.SAFE, command=command)

    for pattern in _warn_re:
        if pattern.search(stripped):
            return CommandClassification(
                risk=CommandRisk.WARN,
                reason=f"Potentially dangerous: {pattern.pattern}",
                command=command,
            )

    return CommandClassification(
        risk=CommandRisk.WARN,
        reason="Unknown command requires review",
        command=command,
    )


def split_command(command: str) -> list[str]:
    """Tokenize with POSIX shell quoting rules; malformed input gives ``[]``."""
    try:
        return shlex.split(command, posix=True)
    except ValueError:
        return []


def parse_delete_command(command: str, cwd: str) -> list[str]:
    """Return the absolute paths an ``rm`` invocation would delete.

    Returns ``[]`` whenever the targets cannot be determined statically:
    the command is not ``rm``, quoting is malformed, a shell operator or
    substitution appears, or any target contains a glob or variable.
    """
    if not command or any(op in command for op in SHELL_OPERATORS):
        return []

    tokens = split_command(command)
    if not tokens or os.path.basename(tokens[0]) not in DELETE_COMMANDS:
        return []

    targets: list[str] = []
    end_of_options = False
    for token in tokens[1:]:
        if not end_of_options:
            if token == "--":
                end_of_options = True
                continue
            if token.startswith("-") and token != "-":
                continue
        targets.append(token)

    if any(GLOB_CHARS.intersection(t) or EXPANSION_CHARS.intersection(t) for t in targets):
        return []

    resolved: list[str] = []
    for target in targets:
        expanded = os.path.expanduser(target)
        if not os.path.isabs(expanded):
            expanded = os.path.join(cwd, expanded)
        resolved.append(os.path.normpath(expanded))
    return resolved
