"""Prompt composition for each agent role."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from taskrelay.config.schema import AgentInstructionsConfig

logger = logging.getLogger(__name__)

FAILED_PROTOCOL_INSTRUCTIONS = """## Failure Protocol

If you hit requirements that conflict, are impossible, or cannot be met
without information you do not have, stop and report instead of guessing:

- First line: FAILED: <agent> reported a failure — <1-sentence summary>
  - Where <agent> is one of: implementer | tester | verifier | reviewer | fixer
- Then these sections:
  Requirements: what you were asked to do
  Problems: why it cannot be done as specified
  Possible Solutions: options that would unblock the work
"""

VERDICT_INSTRUCTIONS = """## Verdict

End your response with exactly one verdict line:

**VERDICT:** ACCEPTABLE | NEEDS_FIXES

- NEEDS_FIXES: critical issues remain (correctness, security, failing tests, missing requirements)
- ACCEPTABLE: the tasks are complete and only minor issues, if any, remain
"""

COMPLETED_TASKS_INSTRUCTIONS = """## Reporting Completed Tasks

When you finish, list the exact titles of the tasks you fully completed under
a heading "Completed Tasks", one per line. Only include tasks that are done.
"""

RETRY_INSTRUCTION_SUFFIXES = (
    "Please implement the changes now, not just plan them.",
    "IMPORTANT: Execute the actual code changes immediately.",
    "CRITICAL: You must write actual code files NOW.",
)


@dataclass(slots=True)
class PhaseContext:
    """Everything a composer may draw on for the next prompt."""

    context: str
    plan_id: str = ""
    plan_file_path: str = ""
    completed_before: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    newly_completed: list[str] = field(default_factory=list)
    implementer_output: str = ""
    tester_output: str = ""
    previous_review: str = ""
    fixer_output: str = ""
    retry_suffix: str = ""


class ContextComposer(Protocol):
    def compose(self, role: str, ctx: PhaseContext) -> str: ...


def _bullets(titles: list[str]) -> str:
    return "- " + "\n- ".join(titles)


def _section(title: str, titles: list[str]) -> str:
    return f"\n\n### {title}\n{_bullets(titles)}" if titles else ""


def load_role_instructions(config: AgentInstructionsConfig, repo_root: str) -> dict[str, str]:
    """Read per-role instruction files; missing files are skipped with a warning."""
    instructions: dict[str, str] = {}
    for role in config.__dataclass_fields__:
        name = getattr(config, role)
        if not name:
            continue
        path = Path(name)
        if not path.is_absolute():
            path = Path(repo_root) / path
        try:
            instructions[role] = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("Could not read %s instructions from %s: %s", role, path, exc)
    return instructions


class DefaultContextComposer:
    def __init__(self, instructions: dict[str, str] | None = None) -> None:
        self._instructions = instructions or {}

    def compose(self, role: str, ctx: PhaseContext) -> str:
        if role == "implementer":
            return self.implementer(ctx)
        if role == "tester":
            return self.tester(ctx)
        if role == "verifier":
            return self.verifier(ctx)
        if role == "reviewer":
            if ctx.previous_review and ctx.fixer_output:
                return self.fix_review(ctx)
            return self.reviewer(ctx)
        if role == "fixer":
            return self.fixer(ctx)
        raise ValueError(f"Unknown agent role: {role}")

    def _custom(self, role: str) -> str:
        text = self._instructions.get(role, "")
        return f"\n\n## Project-Specific Instructions\n\n{text}" if text else ""

    def _plan_reference(self, ctx: PhaseContext) -> str:
        if not (ctx.plan_id and ctx.plan_file_path):
            return ""
        return f"\n\nThe plan file for this work is {ctx.plan_file_path} (plan {ctx.plan_id})."

    def implementer(self, ctx: PhaseContext) -> str:
        retry = f"\n\n{ctx.retry_suffix}" if ctx.retry_suffix else ""
        return (
            "You are an implementer agent. Implement the pending tasks below by making "
            "the actual code changes in the repository. Do not stop at a plan: edit files, "
            "run the relevant commands, and leave the working tree with your changes."
            f"{self._plan_reference(ctx)}\n\n"
            f"{ctx.context}"
            f"{self._custom('implementer')}\n\n"
            f"{COMPLETED_TASKS_INSTRUCTIONS}\n"
            f"{FAILED_PROTOCOL_INSTRUCTIONS}"
            f"{retry}"
        )

    def tester(self, ctx: PhaseContext) -> str:
        return (
            "You are a testing agent. Write or update tests for the work described below, "
            "run them, and fix test failures caused by the tests themselves. Report the "
            "results clearly.\n\n"
            f"{ctx.context}\n\n### Implementer Output\n{ctx.implementer_output}"
            f"{_section('Newly Completed Tasks', ctx.newly_completed)}"
            f"{self._custom('tester')}\n\n"
            f"{FAILED_PROTOCOL_INSTRUCTIONS}"
        )

    def _review_body(self, ctx: PhaseContext) -> str:
        return (
            f"{ctx.context}"
            f"{_section('Completed Tasks', ctx.completed_before + ctx.newly_completed)}"
            f"{_section('Pending Tasks', ctx.pending)}"
            f"\n\n### Initial Implementation Output\n{ctx.implementer_output}"
            f"\n\n### Initial Testing Output\n{ctx.tester_output}"
        )

    def reviewer(self, ctx: PhaseContext) -> str:
        return (
            "You are a code review agent. Review the changes made for the tasks below. "
            "Focus on correctness, security, test coverage and adherence to the task "
            "requirements; list each issue with its severity.\n\n"
            f"{self._review_body(ctx)}"
            f"{self._custom('reviewer')}\n\n"
            f"{VERDICT_INSTRUCTIONS}\n"
            f"{FAILED_PROTOCOL_INSTRUCTIONS}"
        )

    def verifier(self, ctx: PhaseContext) -> str:
        if ctx.previous_review and ctx.fixer_output:
            return self.fix_review(replace(ctx, tester_output=ctx.tester_output or "(combined verifier)"))
        return (
            "You are a verification agent. Run the project's tests, type checks and "
            "linters, add missing tests for the new behavior, and review the changes for "
            "correctness against the tasks below.\n\n"
            f"{ctx.context}"
            f"{_section('Completed Tasks Before This Run', ctx.completed_before)}"
            f"{_section('Pending Tasks Prior to Verification', ctx.pending)}"
            f"{_section('Newly Completed Tasks From Implementer', ctx.newly_completed)}"
            f"\n\n### Implementer Output Summary\n{ctx.implementer_output}"
            f"{self._custom('verifier')}\n\n"
            f"{VERDICT_INSTRUCTIONS}\n"
            f"{FAILED_PROTOCOL_INSTRUCTIONS}"
        )

    def fix_review(self, ctx: PhaseContext) -> str:
        return (
            "You are a fix verification agent. Determine whether the issues raised in the "
            "previous review have been adequately addressed. Do not start a full new review; "
            "flag only unresolved issues or new problems introduced by the fixes.\n\n"
            f"{self._review_body(ctx)}"
            f"{self._custom('reviewer')}"
            f"\n\n## Previous Review Issues\n\n{ctx.previous_review}"
            f"\n\n## Implementer's Response to Review\n\n{ctx.fixer_output}\n\n"
            "For each issue, state whether it is RESOLVED, NOT_ADDRESSED or "
            "PARTIALLY_ADDRESSED with a short assessment.\n\n"
            f"{VERDICT_INSTRUCTIONS}\n"
            f"{FAILED_PROTOCOL_INSTRUCTIONS}"
        )

    def fixer(self, ctx: PhaseContext) -> str:
        tasks = _bullets(ctx.newly_completed or ctx.pending) if (ctx.newly_completed or ctx.pending) else "(none)"
        return (
            "You are a fixer agent focused on addressing reviewer-identified issues "
            "precisely and minimally.\n\n"
            f"Context:\n## Completed Tasks (in scope)\n{tasks}\n\n"
            f"## Initial Implementation Notes\n{ctx.implementer_output}\n\n"
            f"## Testing Agent Output\n{ctx.tester_output}\n\n"
            f"## Review Instructions\n{ctx.previous_review}"
            f"{self._custom('fixer')}\n\n"
            "Your job:\n"
            "1. Make only the changes required to satisfy the review instructions\n"
            "2. Follow repository conventions\n"
            "3. Prefer small, safe changes; avoid broad refactors\n"
            "4. Run relevant tests and commands as needed\n\n"
            "When complete, summarize what you changed. If you could not address an "
            "issue, clearly explain why.\n\n"
            f"{FAILED_PROTOCOL_INSTRUCTIONS}"
        )
