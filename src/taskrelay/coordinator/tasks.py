"""Which plan tasks did the implementer report as done?"""

from __future__ import annotations

import re

_WS = re.compile(r"\s+")
# Leading list markers and checkboxes: "- ", "* ", "1. ", "[x] ".
_MARKER = re.compile(r"^(?:[-*+]\s+|\d+[.)]\s+)?(?:\[[xX ]\]\s*)?")
_LABEL = re.compile(r"^(?:completed|done|finished)(?:\s+task)?\s*[:\-]\s*", re.IGNORECASE)


def _normalize(text: str) -> str:
    return _WS.sub(" ", text).strip().casefold()


def _candidate(line: str) -> str:
    text = _MARKER.sub("", line.strip())
    text = _LABEL.sub("", text)
    return _normalize(text.strip("`*_\"' ").rstrip(".:"))


def parse_completed_tasks(implementer_output: str, pending_titles: list[str]) -> list[str]:
    """Return the pending titles named in *implementer_output*, in plan order.

    A title counts when it makes up a whole line of the output, optionally
    as a list item, checkbox or ``Completed:`` entry. Matching ignores case
    and whitespace.
    """
    if not implementer_output or not pending_titles:
        return []

    lines = {_candidate(line) for line in implementer_output.splitlines() if line.strip()}
    completed: list[str] = []
    for title in pending_titles:
        needle = _normalize(title).rstrip(".:")
        if needle and needle in lines:
            completed.append(title)
    return completed
