"""YAML config loader for taskrelay."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from taskrelay.config.schema import (
    BACKENDS,
    PLANNING_EXHAUSTED_POLICIES,
    PROFILES,
    UNKNOWN_VERDICT_POLICIES,
    AgentInstructionsConfig,
    CodexConfig,
    ExecutorConfig,
    OrchestrationConfig,
    PermissionsConfig,
    TaskRelayConfig,
    TimeoutConfig,
)
from taskrelay.errors import ConfigurationError

DEFAULT_CONFIG_NAME = ".taskrelay.yml"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def load_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> TaskRelayConfig:
    """Load a YAML config file, then apply environment overrides.

    A missing file yields the defaults. Unknown keys are ignored; invalid
    enum values raise ``ConfigurationError``.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    p = Path(path) if path else Path(DEFAULT_CONFIG_NAME)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    config = TaskRelayConfig(
        version=int(raw.get("version", 1)),
        executor=ExecutorConfig(**_pick(_section(raw, "executor"), ExecutorConfig)),
        orchestration=OrchestrationConfig(**_pick(_section(raw, "orchestration"), OrchestrationConfig)),
        timeouts=TimeoutConfig(**_pick(_section(raw, "timeouts"), TimeoutConfig)),
        permissions=PermissionsConfig(**_pick(_section(raw, "permissions"), PermissionsConfig)),
        agents=AgentInstructionsConfig(**_pick(_section(raw, "agents"), AgentInstructionsConfig)),
        codex=CodexConfig(**_pick(_section(raw, "codex"), CodexConfig)),
    )
    apply_env_overrides(config, env)
    validate_config(config)
    return config


def apply_env_overrides(config: TaskRelayConfig, env: Mapping[str, str]) -> None:
    allow_all = env.get("ALLOW_ALL_TOOLS", "").strip().lower()
    if allow_all in ("true", "1"):
        config.permissions.allow_all_tools = True

    gateway = env.get("TASKRELAY_PERMISSIONS_MCP", "").strip().lower()
    if gateway in _TRUE:
        config.permissions.enabled = True
    elif gateway in _FALSE:
        config.permissions.enabled = False


def validate_config(config: TaskRelayConfig) -> None:
    _check("executor.backend", config.executor.backend, BACKENDS)
    _check("executor.profile", config.executor.profile, PROFILES)
    _check("orchestration.unknown_verdict", config.orchestration.unknown_verdict, UNKNOWN_VERDICT_POLICIES)
    _check(
        "orchestration.on_planning_retries_exhausted",
        config.orchestration.on_planning_retries_exhausted,
        PLANNING_EXHAUSTED_POLICIES,
    )
    _check("permissions.default_response", config.permissions.default_response, ("yes", "no"))
    if config.orchestration.max_fix_iterations < 0:
        raise ConfigurationError("orchestration.max_fix_iterations must be >= 0")
    if config.orchestration.max_implementer_attempts < 1:
        raise ConfigurationError("orchestration.max_implementer_attempts must be >= 1")


def _check(name: str, value: str, allowed: tuple[str, ...]) -> None:
    if value not in allowed:
        raise ConfigurationError(f"{name} must be one of {', '.join(allowed)}; got {value!r}")


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
