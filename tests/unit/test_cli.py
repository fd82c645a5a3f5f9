"""Tests for the taskrelay CLI."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from taskrelay.cli import main


def test_parse_rm_lists_targets(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["parse-rm", "rm -f a.txt sub/b.txt", "--cwd", str(tmp_path)])
    assert result.exit_code == 0
    assert result.output.splitlines() == [str(tmp_path / "a.txt"), str(tmp_path / "sub" / "b.txt")]


def test_parse_rm_rejects_compound_command(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["parse-rm", "rm a.txt && ls", "--cwd", str(tmp_path)])
    assert result.exit_code == 1


def test_doctor_reports_missing_binaries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("shutil.which", lambda name: "/usr/bin/git" if name == "git" else None)
    result = CliRunner().invoke(main, ["doctor"])
    assert result.exit_code == 1
    assert "[OK] git" in result.output
    assert "[FAIL] claude" in result.output


def test_doctor_single_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("shutil.which", lambda name: None if name == "codex" else f"/usr/bin/{name}")
    result = CliRunner().invoke(main, ["doctor", "--backend", "claude"])
    assert result.exit_code == 0
    assert "codex" not in result.output


def test_run_requires_existing_plan(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["run", str(tmp_path / "missing.yml")])
    assert result.exit_code == 2


def test_run_reports_invalid_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("taskrelay.cli.setup_logging", lambda **_: None)
    plan = tmp_path / "plan.yml"
    plan.write_text("id: p\ntitle: P\ntasks:\n  - title: One\n", encoding="utf-8")
    config = tmp_path / "bad.yml"
    config.write_text("executor:\n  backend: gemini\n", encoding="utf-8")

    result = CliRunner().invoke(main, ["run", str(plan), "--config", str(config), "--non-interactive"])
    assert result.exit_code == 1
    assert "executor.backend" in result.output
