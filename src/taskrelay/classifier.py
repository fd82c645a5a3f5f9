"""Failure classification for agent output.

Two independent checks live here:

* ``parse_failure`` looks for the out-of-band ``FAILED:`` report an agent
  emits when it cannot continue, and extracts its structured sections.
* ``detect_planning_without_implementation`` flags an implementer that only
  described what it would do, by comparing repository snapshots taken around
  the phase and scanning the text for planning language.

Both functions are pure.
"""

from __future__ import annotations

import json
import re
from typing import Any

from taskrelay.protocol.models import (
    FailureReport,
    FailureSections,
    PlanningDetection,
    RepositoryState,
    Verdict,
)

_FAILED_LINE = re.compile(r"^[ \t>*_#-]*FAILED:[ \t*_]*(?P<summary>.*)$", re.MULTILINE)

# Section headings accept optional markdown decoration ("## Problems", "**Problems:**").
_SECTION_HEADING = re.compile(
    r"^[ \t>#*_-]*(?P<label>requirements|problems|possible\s+solutions|solutions)"
    r"[ \t*_]*(?::[ \t*_]*(?P<rest>.*)|[ \t*_]*)$",
    re.IGNORECASE | re.MULTILINE,
)

_FAILED_AGENT = re.compile(
    r"FAILED:[\s*_]*(?P<agent>implementer|tester|verifier|reviewer|review|fixer)\b",
    re.IGNORECASE,
)

_VERDICT = re.compile(r"\bVERDICT\s*:?\**\s*(ACCEPTABLE|NEEDS_FIXES)", re.IGNORECASE)

# Structured reviewer reply, requested with --json-schema / --output-schema.
REVIEW_VERDICT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "verdict": {"type": "string", "enum": [Verdict.ACCEPTABLE.value, Verdict.NEEDS_FIXES.value]},
        "summary": {"type": "string"},
        "issues": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "severity": {"type": "string", "enum": ["critical", "major", "minor", "info"]},
                    "file": {"type": "string"},
                    "description": {"type": "string"},
                    "suggestion": {"type": "string"},
                },
                "required": ["severity", "file", "description", "suggestion"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["verdict", "summary", "issues"],
    "additionalProperties": False,
}

_PLANNING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\W*plan\s*:", re.IGNORECASE),
    re.compile(r"\b(?:i|we)\s+(?:will|would|plan to|intend to|am going to|are going to)\b", re.IGNORECASE),
    re.compile(r"\b(?:i'll|we'll|let me)\s+(?:start|begin|implement|add|create|update|make|handle)\b", re.IGNORECASE),
    re.compile(r"\bnext steps?\b", re.IGNORECASE),
    re.compile(r"\bwill implement\b", re.IGNORECASE),
    re.compile(r"\b(?:before|prior to) (?:coding|implementing|making changes)\b", re.IGNORECASE),
    re.compile(r"\b(?:follow[- ]up|later)\b.*\bchanges?\b|\bchanges?\b.*\b(?:follow[- ]up|later)\b", re.IGNORECASE),
    re.compile(r"\bawaiting (?:confirmation|approval)\b", re.IGNORECASE),
    re.compile(r"\boutlin(?:e|ing)\b", re.IGNORECASE),
    re.compile(r"\bproposed (?:approach|changes|plan)\b", re.IGNORECASE),
)


def parse_failure(text: str) -> FailureReport:
    """Parse a ``FAILED:`` report anywhere in *text*.

    The summary is the remainder of the first ``FAILED:`` line. Sections
    labelled ``Requirements``, ``Problems`` and ``Solutions`` (or ``Possible
    Solutions``) following the marker are returned in ``details``; when none
    can be found the report is still ``failed`` with only ``summary`` set.
    """
    if not text:
        return FailureReport(failed=False)

    match = _FAILED_LINE.search(text)
    if match is None:
        return FailureReport(failed=False)

    summary = match.group("summary").strip() or None
    body = text[match.end():]
    sections = _extract_sections(body)
    if not sections:
        return FailureReport(failed=True, summary=summary)

    solutions = sections.get("solutions")
    return FailureReport(
        failed=True,
        summary=summary,
        details=FailureSections(
            requirements=sections.get("requirements", ""),
            problems=sections.get("problems", "") or (summary or ""),
            solutions=solutions or None,
        ),
    )


def _extract_sections(body: str) -> dict[str, str]:
    headings = list(_SECTION_HEADING.finditer(body))
    sections: dict[str, str] = {}
    for index, heading in enumerate(headings):
        label = heading.group("label").lower()
        key = "solutions" if "solutions" in label else label
        end = headings[index + 1].start() if index + 1 < len(headings) else len(body)
        first = (heading.group("rest") or "").strip()
        rest = body[heading.end():end].strip()
        content = "\n".join(part for part in (first, rest) if part).strip()
        if key not in sections:
            sections[key] = content
    return sections


def infer_failed_agent(text: str, default: str) -> str:
    """Return the role named in ``FAILED: <role> reported a failure``."""
    match = _FAILED_AGENT.search(text or "")
    if match is None:
        return default
    agent = match.group("agent").lower()
    return "reviewer" if agent == "review" else agent


def parse_verdict(text: str) -> Verdict:
    """Extract the reviewer verdict from free text.

    A JSON object with a ``verdict`` key wins; otherwise the last
    ``VERDICT: ...`` token is used.
    """
    stripped = (text or "").strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            value = str(data.get("verdict", "")).upper()
            if value in (Verdict.ACCEPTABLE, Verdict.NEEDS_FIXES):
                return Verdict(value)

    matches = _VERDICT.findall(text or "")
    if not matches:
        return Verdict.UNKNOWN
    return Verdict(matches[-1].upper())


def find_planning_indicators(text: str) -> list[str]:
    indicators: list[str] = []
    for line in (text or "").splitlines():
        candidate = line.strip()
        if not candidate:
            continue
        if any(p.search(candidate) for p in _PLANNING_PATTERNS):
            indicators.append(candidate)
    return indicators


def detect_planning_without_implementation(
    text: str,
    before: RepositoryState | None,
    after: RepositoryState | None,
) -> PlanningDetection:
    indicators = tuple(find_planning_indicators(text))

    if before is None or after is None:
        return PlanningDetection(
            detected=False,
            commit_changed=False,
            working_tree_changed=False,
            planning_indicators=indicators,
            repository_status_unavailable=True,
        )

    commit_changed = before.commit_hash != after.commit_hash
    working_tree_changed = (
        before.has_changes != after.has_changes
        or before.diff_hash != after.diff_hash
        or before.status_output != after.status_output
    )
    unchanged = not commit_changed and not working_tree_changed
    return PlanningDetection(
        detected=unchanged and bool(indicators),
        commit_changed=commit_changed,
        working_tree_changed=working_tree_changed,
        planning_indicators=indicators,
    )
