"""Tests for failure, verdict and planning classification."""

from __future__ import annotations

from taskrelay.classifier import (
    detect_planning_without_implementation,
    find_planning_indicators,
    infer_failed_agent,
    parse_failure,
    parse_verdict,
)
from taskrelay.protocol.models import RepositoryState, Verdict

CLEAN = RepositoryState(commit_hash="a1", has_changes=False)


class TestParseFailure:
    def test_no_marker(self) -> None:
        assert parse_failure("All good").failed is False
        assert parse_failure("").failed is False

    def test_marker_mid_sentence_is_ignored(self) -> None:
        assert parse_failure("The previous run FAILED: twice").failed is False

    def test_summary_only(self) -> None:
        report = parse_failure("Some preamble\nFAILED: tester reported a failure — no test runner\n")
        assert report.failed is True
        assert report.summary == "tester reported a failure — no test runner"
        assert report.details is None
        assert report.to_details("tester").problems == "tester reported a failure — no test runner"

    def test_markdown_sections(self) -> None:
        text = (
            "**FAILED:** implementer reported a failure — blocked\n\n"
            "## Requirements\n"
            "Use the v2 API.\n\n"
            "## Problems\n"
            "The v2 API is not installed.\n"
            "The lockfile pins v1.\n\n"
            "## Possible Solutions\n"
            "- Upgrade the dependency\n"
        )
        report = parse_failure(text)
        assert report.failed is True
        assert report.summary == "implementer reported a failure — blocked"
        assert report.details is not None
        assert report.details.requirements == "Use the v2 API."
        assert report.details.problems == "The v2 API is not installed.\nThe lockfile pins v1."
        assert report.details.solutions == "- Upgrade the dependency"

    def test_missing_problems_fall_back_to_summary(self) -> None:
        report = parse_failure("FAILED: cannot proceed\nRequirements: do X\n")
        assert report.details is not None
        assert report.details.problems == "cannot proceed"
        assert report.details.solutions is None


class TestInferFailedAgent:
    def test_named_agent(self) -> None:
        assert infer_failed_agent("FAILED: tester reported a failure", "implementer") == "tester"

    def test_review_alias(self) -> None:
        assert infer_failed_agent("FAILED: Review reported a failure", "fixer") == "reviewer"

    def test_default(self) -> None:
        assert infer_failed_agent("FAILED: something broke", "fixer") == "fixer"


class TestParseVerdict:
    def test_bold_token(self) -> None:
        assert parse_verdict("Fine.\n**VERDICT:** ACCEPTABLE") is Verdict.ACCEPTABLE

    def test_last_token_wins(self) -> None:
        text = "Earlier I said VERDICT: ACCEPTABLE but\nVERDICT: NEEDS_FIXES"
        assert parse_verdict(text) is Verdict.NEEDS_FIXES

    def test_case_insensitive(self) -> None:
        assert parse_verdict("verdict: needs_fixes") is Verdict.NEEDS_FIXES

    def test_json_output(self) -> None:
        assert parse_verdict('{"verdict": "acceptable", "issues": []}') is Verdict.ACCEPTABLE

    def test_unknown(self) -> None:
        assert parse_verdict("Looks good overall.") is Verdict.UNKNOWN
        assert parse_verdict("") is Verdict.UNKNOWN


class TestPlanningDetection:
    def test_indicators(self) -> None:
        text = "Plan: refactor the parser\nI will add tests next.\nDone with nothing."
        assert find_planning_indicators(text) == ["Plan: refactor the parser", "I will add tests next."]

    def test_detected_when_repository_unchanged(self) -> None:
        result = detect_planning_without_implementation("Next steps: write the code", CLEAN, CLEAN)
        assert result.detected is True
        assert result.commit_changed is False
        assert result.working_tree_changed is False

    def test_not_detected_after_commit(self) -> None:
        after = RepositoryState(commit_hash="b2", has_changes=False)
        result = detect_planning_without_implementation("I will implement this", CLEAN, after)
        assert result.detected is False
        assert result.commit_changed is True

    def test_not_detected_when_diff_changes(self) -> None:
        before = RepositoryState(commit_hash="a1", has_changes=True, status_output=" M a\n", diff_hash="x")
        after = RepositoryState(commit_hash="a1", has_changes=True, status_output=" M a\n", diff_hash="y")
        assert detect_planning_without_implementation("I will do it", before, after).working_tree_changed

    def test_not_detected_without_indicators(self) -> None:
        assert detect_planning_without_implementation("Nothing to change.", CLEAN, CLEAN).detected is False

    def test_unavailable_state(self) -> None:
        result = detect_planning_without_implementation("I will implement this", None, CLEAN)
        assert result.detected is False
        assert result.repository_status_unavailable is True
