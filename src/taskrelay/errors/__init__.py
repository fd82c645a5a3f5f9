"""taskrelay error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    PROCESS = "process"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    PLAN = "plan"
    INTERNAL = "internal"


class OrchestratorError(Exception):
    """Base error for all taskrelay exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class AgentInvocationError(OrchestratorError):
    """An agent process could not produce a usable result."""

    def __init__(self, message: str, *, backend: str, **kwargs: Any) -> None:
        kwargs.setdefault("category", ErrorCategory.PROCESS)
        super().__init__(message, **kwargs)
        self.backend = backend


class AgentProcessError(AgentInvocationError):
    """Agent exited non-zero without ever reporting a result."""

    def __init__(self, backend: str, exit_code: int, stderr_tail: str = "") -> None:
        message = f"{backend} exited with code {exit_code}"
        if stderr_tail:
            message += f": {stderr_tail.strip().splitlines()[-1]}"
        super().__init__(message, backend=backend, details={"stderr_tail": stderr_tail})
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class AgentTimeoutError(AgentInvocationError):
    """Agent produced no output for longer than the allowed window."""

    def __init__(self, backend: str, timeout: float, *, initial: bool = False) -> None:
        window = "initial output" if initial else "inactivity"
        super().__init__(
            f"{backend} timed out after {timeout:g}s ({window} timeout); terminated",
            backend=backend,
            category=ErrorCategory.TIMEOUT,
        )
        self.timeout = timeout
        self.initial = initial


class NoFinalMessageError(AgentInvocationError):
    """Agent finished cleanly but never produced a final message."""

    def __init__(self, backend: str) -> None:
        super().__init__(f"No final agent message found in {backend} output", backend=backend)


class ConfigurationError(OrchestratorError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION)


class PlanStoreError(OrchestratorError):
    """Plan file could not be read or updated."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.PLAN)
        self.path = path
