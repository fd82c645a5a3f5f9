"""Configuration schema for taskrelay YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field

BACKENDS = ("claude", "codex")
PROFILES = ("normal", "simple")
UNKNOWN_VERDICT_POLICIES = ("accept", "needs_fixes", "fail")
PLANNING_EXHAUSTED_POLICIES = ("proceed", "fail")


@dataclass(slots=True)
class ExecutorConfig:
    backend: str = "claude"
    model: str = ""  # empty string = backend default
    profile: str = "normal"


@dataclass(slots=True)
class OrchestrationConfig:
    max_fix_iterations: int = 5
    max_implementer_attempts: int = 4
    unknown_verdict: str = "accept"
    on_planning_retries_exhausted: str = "proceed"
    mark_tasks_on_unresolved_review: bool = False
    structured_review: bool = False  # review role answers with REVIEW_VERDICT_SCHEMA JSON


@dataclass(slots=True)
class TimeoutConfig:
    initial_seconds: float = 120.0
    inactivity_seconds: float = 1800.0


@dataclass(slots=True)
class PermissionsConfig:
    enabled: bool = True
    allow_all_tools: bool = False
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    include_default_tools: bool = True
    prompt_timeout_seconds: float | None = None
    default_response: str = "no"
    auto_approve_created_file_deletion: bool = False
    settings_path: str = ""  # empty = <repo>/.claude/settings.local.json
    shared_store: bool = True


@dataclass(slots=True)
class AgentInstructionsConfig:
    """Per-role extra instruction files, relative to the repository root."""

    implementer: str = ""
    tester: str = ""
    verifier: str = ""
    reviewer: str = ""
    fixer: str = ""


@dataclass(slots=True)
class CodexConfig:
    reasoning_level: str = "medium"
    search: bool = False


@dataclass(slots=True)
class TaskRelayConfig:
    version: int = 1
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)
    agents: AgentInstructionsConfig = field(default_factory=AgentInstructionsConfig)
    codex: CodexConfig = field(default_factory=CodexConfig)
    interactive: bool = True
