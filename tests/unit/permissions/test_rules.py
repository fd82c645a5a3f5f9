"""Tests for allow rules."""

from __future__ import annotations

from taskrelay.permissions.rules import (
    AllowRuleSet,
    build_allowed_tools,
    default_allowed_tools,
    format_bash_rule,
    parse_tool_spec,
)


class TestParseToolSpec:
    def test_bare_tool(self) -> None:
        assert parse_tool_spec("Edit") == ("Edit", None)

    def test_bash_prefix(self) -> None:
        assert parse_tool_spec("Bash(git diff:*)") == ("Bash", "git diff")
        assert parse_tool_spec("Bash(pwd)") == ("Bash", "pwd")

    def test_malformed(self) -> None:
        assert parse_tool_spec("Bash(git diff") is None
        assert parse_tool_spec("Bash()") is None
        assert parse_tool_spec("   ") is None

    def test_format_round_trip(self) -> None:
        assert format_bash_rule("npm test") == "Bash(npm test:*)"
        assert format_bash_rule("pwd", exact=True) == "Bash(pwd)"


class TestAllowRuleSet:
    def test_bash_prefix_matching(self) -> None:
        rules = AllowRuleSet.from_tool_specs(["Bash(git diff:*)", "Edit"])
        assert rules.is_allowed("Bash", {"command": "git diff HEAD"})
        assert not rules.is_allowed("Bash", {"command": "git push"})
        assert not rules.is_allowed("Bash", {})
        assert rules.is_allowed("Edit", {"file_path": "x"})
        assert not rules.is_allowed("Write", {})

    def test_prefixes_are_not_duplicated(self) -> None:
        rules = AllowRuleSet()
        assert rules.add_bash_prefix("make") is True
        assert rules.add_bash_prefix("make") is False
        assert rules.add_bash_prefix("  ") is False
        assert rules.bash_prefixes() == ["make"]

    def test_whole_bash_tool(self) -> None:
        rules = AllowRuleSet.from_tool_specs(["Bash"])
        assert rules.is_allowed("Bash", {"command": "anything"})
        assert rules.add_bash_prefix("make") is False

    def test_first_matching_prefix_wins(self) -> None:
        rules = AllowRuleSet.from_tool_specs(["Bash(git:*)", "Bash(git diff:*)"])
        assert rules.match_bash_prefix("git diff") == "git"

    def test_to_tool_specs(self) -> None:
        specs = ["Edit", "Bash(ls:*)", "Bash(pwd:*)"]
        assert AllowRuleSet.from_tool_specs(specs).to_tool_specs() == specs


class TestBuildAllowedTools:
    def test_defaults_first_then_configured_then_persisted(self) -> None:
        merged = build_allowed_tools(configured=["Bash(make:*)"], persisted=["Bash(make:*)", "Read"])
        defaults = default_allowed_tools()
        assert merged[: len(defaults)] == defaults
        assert merged[len(defaults):] == ["Bash(make:*)", "Read"]

    def test_disallowed_removed(self) -> None:
        merged = build_allowed_tools(configured=["Read"], disallowed=["Read", "Edit"], include_defaults=True)
        assert "Read" not in merged
        assert "Edit" not in merged
        assert "Write" in merged

    def test_without_defaults(self) -> None:
        assert build_allowed_tools(configured=["Read", " ", "Read"], include_defaults=False) == ["Read"]
