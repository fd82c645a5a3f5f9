"""Run, phase and wire protocol types for taskrelay."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

AgentRole = Literal["implementer", "tester", "verifier", "reviewer", "fixer"]
CaptureMode = Literal["none", "all", "result"]

ROLE_LABELS: dict[str, str] = {
    "implementer": "Implementer",
    "tester": "Tester",
    "verifier": "Verifier",
    "reviewer": "Reviewer",
    "fixer": "Fixer",
}


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class Verdict(StrEnum):
    """Terminal judgement of a review phase."""

    ACCEPTABLE = "ACCEPTABLE"
    NEEDS_FIXES = "NEEDS_FIXES"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True, frozen=True)
class PhaseResult:
    role: AgentRole
    raw_output: str
    failed: bool = False
    verdict: Verdict | None = None


@dataclass(slots=True, frozen=True)
class FailureDetails:
    requirements: str
    problems: str
    source_agent: str
    solutions: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class FailureSections:
    """Structured body of a FAILED report."""

    requirements: str
    problems: str
    solutions: str | None = None


@dataclass(slots=True, frozen=True)
class FailureReport:
    failed: bool
    summary: str | None = None
    details: FailureSections | None = None

    def to_details(self, source_agent: str) -> FailureDetails:
        if self.details is not None:
            return FailureDetails(
                requirements=self.details.requirements,
                problems=self.details.problems,
                solutions=self.details.solutions,
                source_agent=source_agent,
            )
        return FailureDetails(
            requirements="",
            problems=self.summary or "FAILED",
            source_agent=source_agent,
        )


@dataclass(slots=True, frozen=True)
class RepositoryState:
    commit_hash: str | None
    has_changes: bool
    status_output: str = ""
    diff_hash: str | None = None


@dataclass(slots=True, frozen=True)
class PlanningDetection:
    detected: bool
    commit_changed: bool
    working_tree_changed: bool
    planning_indicators: tuple[str, ...] = ()
    repository_status_unavailable: bool = False


@dataclass(slots=True)
class PlanInfo:
    plan_file_path: str = ""
    plan_id: str = ""
    plan_title: str = ""
    capture_output: CaptureMode = "none"

    @property
    def has_plan_context(self) -> bool:
        return bool(self.plan_file_path.strip()) and bool(self.plan_id.strip())


@dataclass(slots=True)
class Step:
    title: str
    body: str


@dataclass(slots=True)
class ExecutorOutput:
    content: str
    steps: list[Step] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    failure_details: FailureDetails | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PhaseSequenceError(RuntimeError):
    """A phase result was appended after the run already failed."""


@dataclass(slots=True)
class OrchestrationRun:
    """Mutable state owned by exactly one ``execute()`` call."""

    tracked_files: set[str] = field(default_factory=set)
    fix_iterations: int = 0
    planning_retries: int = 0
    results: list[PhaseResult] = field(default_factory=list)
    failure_details: FailureDetails | None = None
    started_at: str = field(default_factory=utc_now_iso)

    @property
    def failed(self) -> bool:
        return any(r.failed for r in self.results)

    def append(self, result: PhaseResult, failure: FailureDetails | None = None) -> None:
        if self.failed:
            raise PhaseSequenceError(
                f"cannot record {result.role} phase after a failed phase"
            )
        self.results.append(result)
        if result.failed:
            self.failure_details = failure or FailureDetails(
                requirements="", problems="FAILED", source_agent=result.role
            )

    def track_file(self, path: str) -> None:
        if not os.path.isabs(path):
            raise ValueError(f"tracked files must be absolute paths: {path!r}")
        self.tracked_files.add(os.path.normpath(path))

    def track_files(self, paths: Any) -> None:
        for p in paths:
            self.track_file(p)

    def last_output(self, role: str | None = None) -> str:
        for result in reversed(self.results):
            if role is None or result.role == role:
                return result.raw_output
        return ""


# ---------------------------------------------------------------------------
# Permission socket wire messages
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PermissionRequest:
    request_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "PermissionRequest":
        raw_input = data.get("input")
        return cls(
            request_id=str(data["requestId"]),
            tool_name=str(data.get("tool_name", "")),
            input=raw_input if isinstance(raw_input, dict) else {},
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "permission_request",
            "requestId": self.request_id,
            "tool_name": self.tool_name,
            "input": self.input,
        }


@dataclass(slots=True, frozen=True)
class PermissionResponse:
    request_id: str
    approved: bool

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "permission_response",
            "requestId": self.request_id,
            "approved": self.approved,
        }
