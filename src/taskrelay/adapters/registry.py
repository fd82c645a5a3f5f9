"""Backend registry for built-in agent CLIs."""

from __future__ import annotations

from taskrelay.adapters.base import AgentBackend
from taskrelay.adapters.claude import ClaudeBackend
from taskrelay.adapters.codex import CodexBackend


def get_backend(backend: str) -> AgentBackend:
    b = backend.lower()
    if b == "claude":
        return ClaudeBackend()
    if b == "codex":
        return CodexBackend()
    raise ValueError(f"Unsupported backend: {backend}")
