"""Command safety helpers."""

from taskrelay.safety.bash_policy import (
    CommandClassification,
    CommandRisk,
    classify_command,
    parse_delete_command,
)

__all__ = [
    "CommandClassification",
    "CommandRisk",
    "classify_command",
    "parse_delete_command",
]
