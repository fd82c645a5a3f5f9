"""Allow rules for agent tool use.

Rules are written the way the agent CLIs spell them on the command line:
a bare tool name (``Edit``) allows every call of that tool, while
``Bash(git diff:*)`` allows shell commands starting with ``git diff`` and
``Bash(pwd)`` allows commands starting with ``pwd``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

logger = logging.getLogger(__name__)

BASH_TOOL_NAME = "Bash"

JS_TASK_RUNNERS = ("npm", "pnpm", "yarn", "bun")


def default_allowed_tools() -> list[str]:
    """Tools an agent may use without asking."""
    tools = [
        "Edit",
        "MultiEdit",
        "Write",
        "WebFetch",
        "WebSearch",
        "Bash(cat:*)",
        "Bash(cd:*)",
        "Bash(cp:*)",
        "Bash(find:*)",
        "Bash(grep:*)",
        "Bash(ls:*)",
        "Bash(mkdir:*)",
        "Bash(mv:*)",
        "Bash(pwd)",
        "Bash(rg:*)",
        "Bash(sed:*)",
        "Bash(awk:*)",
        "Bash(rm test-:*)",
        "Bash(rm -f test-:*)",
        "Bash(git diff:*)",
        "Bash(git status:*)",
        "Bash(git log:*)",
        "Bash(git commit:*)",
        "Bash(git add:*)",
        "Bash(jj diff:*)",
        "Bash(jj status)",
        "Bash(jj log:*)",
        "Bash(jj commit:*)",
        "Bash(jj bookmark move:*)",
    ]
    for runner in JS_TASK_RUNNERS:
        tools += [
            f"Bash({runner} test:*)",
            f"Bash({runner} run build:*)",
            f"Bash({runner} run check:*)",
            f"Bash({runner} run typecheck:*)",
            f"Bash({runner} run lint:*)",
            f"Bash({runner} install)",
            f"Bash({runner} add:*)",
        ]
    tools += [
        "Bash(cargo add:*)",
        "Bash(cargo build)",
        "Bash(cargo test:*)",
        "Bash(pytest:*)",
        "Bash(python -m pytest:*)",
        "Bash(uv run pytest:*)",
        "Bash(taskrelay parse-rm:*)",
    ]
    return tools


def parse_tool_spec(spec: str) -> tuple[str, str | None] | None:
    """Split ``Bash(prefix:*)`` into ``("Bash", "prefix")``.

    Bare tool names give ``(name, None)``. Malformed or empty specs give
    ``None``.
    """
    if not isinstance(spec, str):
        return None
    spec = spec.strip()
    if not spec:
        return None
    if not spec.startswith(f"{BASH_TOOL_NAME}("):
        return spec, None
    if not spec.endswith(")"):
        logger.debug("Skipping malformed Bash tool configuration: %s", spec)
        return None
    command = spec[len(BASH_TOOL_NAME) + 1:-1]
    if command.endswith(":*"):
        command = command[:-2]
    command = command.strip()
    if not command:
        return None
    return BASH_TOOL_NAME, command


def format_bash_rule(prefix: str, *, exact: bool = False) -> str:
    if exact:
        return f"{BASH_TOOL_NAME}({prefix})"
    return f"{BASH_TOOL_NAME}({prefix}:*)"


@dataclass(slots=True)
class AllowRuleSet:
    """Tool name to ``True`` (always allowed) or ordered Bash prefixes."""

    rules: dict[str, bool | list[str]] = field(default_factory=dict)

    @classmethod
    def from_tool_specs(cls, specs: Iterable[str]) -> "AllowRuleSet":
        ruleset = cls()
        for spec in specs:
            ruleset.add_spec(spec)
        return ruleset

    def add_spec(self, spec: str) -> bool:
        parsed = parse_tool_spec(spec)
        if parsed is None:
            return False
        tool, prefix = parsed
        if prefix is None:
            return self.add_tool(tool)
        return self.add_bash_prefix(prefix)

    def add_tool(self, tool_name: str) -> bool:
        if self.rules.get(tool_name) is True:
            return False
        self.rules[tool_name] = True
        return True

    def add_bash_prefix(self, prefix: str) -> bool:
        prefix = prefix.strip()
        if not prefix:
            return False
        existing = self.rules.get(BASH_TOOL_NAME)
        if existing is True:
            return False
        if isinstance(existing, list):
            if prefix in existing:
                return False
            existing.append(prefix)
            return True
        self.rules[BASH_TOOL_NAME] = [prefix]
        return True

    def is_tool_allowed(self, tool_name: str) -> bool:
        return self.rules.get(tool_name) is True

    def bash_prefixes(self) -> list[str]:
        existing = self.rules.get(BASH_TOOL_NAME)
        return list(existing) if isinstance(existing, list) else []

    def match_bash_prefix(self, command: str) -> str | None:
        for prefix in self.bash_prefixes():
            if command.startswith(prefix):
                return prefix
        return None

    def is_allowed(self, tool_name: str, tool_input: dict[str, Any] | None = None) -> bool:
        if self.is_tool_allowed(tool_name):
            return True
        if tool_name != BASH_TOOL_NAME:
            return False
        command = (tool_input or {}).get("command")
        return isinstance(command, str) and self.match_bash_prefix(command) is not None

    def to_tool_specs(self) -> list[str]:
        specs: list[str] = []
        for tool, rule in self.rules.items():
            if rule is True:
                specs.append(tool)
            elif isinstance(rule, list):
                specs.extend(format_bash_rule(p) for p in rule)
        return specs


def build_allowed_tools(
    *,
    configured: Iterable[str] = (),
    persisted: Iterable[str] = (),
    disallowed: Iterable[str] = (),
    include_defaults: bool = True,
) -> list[str]:
    """Merge default, configured and persisted allow lists, minus disallowed."""
    blocked = {t.strip() for t in disallowed if isinstance(t, str)}
    merged: list[str] = []
    seen: set[str] = set()
    sources: list[Iterable[str]] = [configured, persisted]
    if include_defaults:
        sources.insert(0, default_allowed_tools())
    for source in sources:
        for tool in source:
            if not isinstance(tool, str):
                continue
            tool = tool.strip()
            if not tool or tool in seen or tool in blocked:
                continue
            seen.add(tool)
            merged.append(tool)
    return merged
