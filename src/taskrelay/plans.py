"""YAML plan files: read tasks, mark them done, render prompt context."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml

from taskrelay.errors import PlanStoreError
from taskrelay.protocol.io import write_text_atomic
from taskrelay.protocol.locks import locked_file
from taskrelay.protocol.models import utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanTask:
    title: str
    description: str = ""
    done: bool = False


@dataclass(slots=True)
class Plan:
    id: str = ""
    title: str = ""
    goal: str = ""
    details: str = ""
    tasks: list[PlanTask] = field(default_factory=list)

    @property
    def pending_titles(self) -> list[str]:
        return [t.title for t in self.tasks if not t.done]

    @property
    def completed_titles(self) -> list[str]:
        return [t.title for t in self.tasks if t.done]


class PlanStore(Protocol):
    def read_plan(self, path: str) -> Plan: ...

    def mark_tasks_done(self, path: str, titles: list[str]) -> list[str]: ...


def _load_raw(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanStoreError(f"Cannot read plan file {path}: {exc}", path=str(path)) from exc
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise PlanStoreError(f"Invalid YAML in plan file {path}: {exc}", path=str(path)) from exc
    if not isinstance(raw, dict):
        raise PlanStoreError(f"Plan file {path} must contain a mapping", path=str(path))
    return raw


def _parse_tasks(raw: Any) -> list[PlanTask]:
    tasks: list[PlanTask] = []
    if not isinstance(raw, list):
        return tasks
    for item in raw:
        if not isinstance(item, dict) or not item.get("title"):
            continue
        tasks.append(
            PlanTask(
                title=str(item["title"]),
                description=str(item.get("description") or ""),
                done=bool(item.get("done", False)),
            )
        )
    return tasks


class YamlPlanStore:
    def read_plan(self, path: str) -> Plan:
        raw = _load_raw(Path(path))
        return Plan(
            id=str(raw.get("id", "")),
            title=str(raw.get("title") or ""),
            goal=str(raw.get("goal") or ""),
            details=str(raw.get("details") or ""),
            tasks=_parse_tasks(raw.get("tasks")),
        )

    def mark_tasks_done(self, path: str, titles: list[str]) -> list[str]:
        """Set ``done: true`` on pending tasks named in *titles*.

        Returns the titles that were actually changed. Other keys in the file
        are preserved.
        """
        plan_path = Path(path)
        wanted = {_normalize(t) for t in titles}
        changed: list[str] = []
        with locked_file(plan_path.with_name(plan_path.name + ".lock")):
            raw = _load_raw(plan_path)
            for item in raw.get("tasks") or []:
                if not isinstance(item, dict) or item.get("done"):
                    continue
                if _normalize(str(item.get("title", ""))) in wanted:
                    item["done"] = True
                    changed.append(str(item["title"]))
            if not changed:
                return changed
            raw["updatedAt"] = utc_now_iso()
            try:
                write_text_atomic(plan_path, yaml.safe_dump(raw, sort_keys=False, allow_unicode=True))
            except OSError as exc:
                raise PlanStoreError(f"Cannot write plan file {path}: {exc}", path=path) from exc
        logger.info("Marked %d task(s) done in %s", len(changed), path)
        return changed


def _normalize(title: str) -> str:
    return " ".join(title.split()).casefold()


def render_plan_context(plan: Plan, extra: Iterable[str] = ()) -> str:
    """Markdown rendering of a plan used as the base prompt."""
    lines = [f"# {plan.title or 'Plan'}"]
    if plan.id:
        lines.append(f"Plan ID: {plan.id}")
    if plan.goal:
        lines += ["", "## Goal", plan.goal.strip()]
    if plan.details:
        lines += ["", "## Details", plan.details.strip()]
    if plan.tasks:
        lines += ["", "## Tasks"]
        for task in plan.tasks:
            mark = "x" if task.done else " "
            lines.append(f"- [{mark}] {task.title}")
            if task.description and not task.done:
                lines += [f"  {line}" for line in task.description.strip().splitlines()]
    for section in extra:
        lines += ["", section]
    return "\n".join(lines) + "\n"
