"""CLI entrypoint for taskrelay."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from taskrelay.adapters.registry import get_backend
from taskrelay.config.loader import DEFAULT_CONFIG_NAME, load_config
from taskrelay.config.schema import BACKENDS, TaskRelayConfig
from taskrelay.coordinator.context import DefaultContextComposer, load_role_instructions
from taskrelay.coordinator.orchestrator import PhaseOrchestrator
from taskrelay.errors import ConfigurationError, PlanStoreError
from taskrelay.permissions.prompt import ConsolePrompter
from taskrelay.permissions.store import PermissionStore
from taskrelay.plans import YamlPlanStore, render_plan_context
from taskrelay.protocol.models import ExecutorOutput, PlanInfo
from taskrelay.safety.bash_policy import parse_delete_command
from taskrelay.utilities.logger import get_logger, setup_logging
from taskrelay.workspace.repository import GitRepository


console = Console()


@click.group()
def main() -> None:
    """Drive coding-agent CLIs through implement, test, review and fix phases."""


def _apply_cli_overrides(
    cfg: TaskRelayConfig,
    *,
    backend: str | None,
    model: str | None,
    simple: bool,
    allow_all_tools: bool,
    interactive: bool,
) -> None:
    if backend:
        cfg.executor.backend = backend
    if model:
        cfg.executor.model = model
    if simple:
        cfg.executor.profile = "simple"
    if allow_all_tools:
        cfg.permissions.allow_all_tools = True
    cfg.interactive = interactive


async def _run_plan(
    plan_file: Path,
    *,
    config_path: Path | None,
    capture: str,
    overrides: dict[str, Any],
) -> ExecutorOutput | str | None:
    repository = GitRepository(Path.cwd())
    root = await repository.get_root()
    cfg = load_config(config_path or Path(root) / DEFAULT_CONFIG_NAME)
    _apply_cli_overrides(cfg, **overrides)

    permissions = cfg.permissions
    repository_id = repository.repository_identity() if permissions.shared_store else ""
    permission_store = PermissionStore.for_repository(
        root,
        repository_id,
        settings_path=permissions.settings_path or None,
        shared=permissions.shared_store,
    )

    plan_store = YamlPlanStore()
    plan_path = str(plan_file.resolve())
    plan = plan_store.read_plan(plan_path)
    orchestrator = PhaseOrchestrator(
        get_backend(cfg.executor.backend),
        cfg,
        plan_store=plan_store,
        repository=repository,
        composer=DefaultContextComposer(load_role_instructions(cfg.agents, root)),
        prompter=ConsolePrompter() if cfg.interactive else None,
        permission_store=permission_store,
    )
    get_logger("taskrelay.cli").info(
        "run_started",
        plan=plan_path,
        backend=cfg.executor.backend,
        profile=cfg.executor.profile,
        pending=len(plan.pending_titles),
    )
    return await orchestrator.execute(
        render_plan_context(plan),
        PlanInfo(
            plan_file_path=plan_path,
            plan_id=plan.id or plan_file.stem,
            plan_title=plan.title,
            capture_output=capture,  # type: ignore[arg-type]
        ),
    )


def _print_failure(output: ExecutorOutput) -> None:
    details = output.failure_details
    lines = []
    if details is not None:
        lines.append(f"[bold]Source agent:[/bold] {details.source_agent}")
        if details.requirements:
            lines.append(f"\n[bold]Requirements[/bold]\n{details.requirements}")
        lines.append(f"\n[bold]Problems[/bold]\n{details.problems}")
        if details.solutions:
            lines.append(f"\n[bold]Possible solutions[/bold]\n{details.solutions}")
    console.print(Panel("\n".join(lines) or output.content, title="Run failed", border_style="red"))


def _print_output(output: ExecutorOutput) -> None:
    table = Table(title="Phases")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Output", overflow="fold")
    for index, step in enumerate(output.steps, start=1):
        preview = step.body.strip().splitlines()[0] if step.body.strip() else ""
        table.add_row(str(index), step.title, preview[:120])
    console.print(table)
    console.print(Panel(output.content, title="Final output", border_style="green"))


@main.command("run")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help=f"Config file (default: <repo>/{DEFAULT_CONFIG_NAME})")
@click.option("--backend", type=click.Choice(BACKENDS), default=None, help="Agent CLI to drive")
@click.option("--model", default=None, help="Model passed to the agent CLI")
@click.option("--simple", is_flag=True, help="Use the implementer + verifier profile")
@click.option("--capture", type=click.Choice(["none", "all", "result"]), default="none",
              help="What to print when the run succeeds")
@click.option("--allow-all-tools", is_flag=True, help="Skip all permission checks")
@click.option("--non-interactive", is_flag=True, help="Never prompt; disables the permission gateway")
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
def run_command(
    plan_file: Path,
    config_path: Path | None,
    backend: str | None,
    model: str | None,
    simple: bool,
    capture: str,
    allow_all_tools: bool,
    non_interactive: bool,
    debug_flag: bool,
    json_logs: bool,
) -> None:
    """Run the phase workflow for PLAN_FILE."""
    setup_logging(debug=debug_flag, json_output=json_logs)
    overrides = {
        "backend": backend,
        "model": model,
        "simple": simple,
        "allow_all_tools": allow_all_tools,
        "interactive": not non_interactive and sys.stdin.isatty(),
    }
    try:
        result = asyncio.run(
            _run_plan(plan_file, config_path=config_path, capture=capture, overrides=overrides)
        )
    except (ConfigurationError, PlanStoreError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if isinstance(result, ExecutorOutput):
        if not result.success:
            _print_failure(result)
            raise SystemExit(1)
        _print_output(result)
    elif isinstance(result, str):
        click.echo(result)
    else:
        console.print("[green]Run complete.[/green]")


@main.command("parse-rm")
@click.argument("command")
@click.option("--cwd", default=".", type=click.Path(file_okay=False, path_type=Path),
              help="Directory relative targets resolve against")
def parse_rm_command(command: str, cwd: Path) -> None:
    """Show which files COMMAND would delete, if it is eligible for auto-approval."""
    targets = parse_delete_command(command, os.path.abspath(cwd))
    if not targets:
        click.echo("Not an auto-approvable rm command", err=True)
        raise SystemExit(1)
    for target in targets:
        click.echo(target)


def _doctor_rows() -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for binary in ("git", *BACKENDS):
        found = shutil.which(binary)
        rows.append({
            "binary": binary,
            "ok": found is not None,
            "details": found or f"missing binary `{binary}`",
        })
    return rows


@main.command("doctor")
@click.option("--backend", type=click.Choice(BACKENDS), default=None, help="Only check this backend")
def doctor_command(backend: str | None) -> None:
    """Check that git and the agent CLIs are on PATH."""
    rows = [r for r in _doctor_rows() if backend is None or r["binary"] in ("git", backend)]
    click.echo("Backend preflight:")
    all_ok = True
    for row in rows:
        icon = "OK" if row["ok"] else "FAIL"
        click.echo(f"  [{icon}] {row['binary']} - {row['details']}")
        all_ok = all_ok and bool(row["ok"])
    raise SystemExit(0 if all_ok else 1)
