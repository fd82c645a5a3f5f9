"""Tests for logging setup."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from taskrelay.utilities.logger import get_logger, setup_logging


@pytest.fixture
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_stdlib_records_render_as_json(restore_logging: None, capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging(debug=True, json_output=True)
    logging.getLogger("taskrelay.test").debug("Gateway listening on %s", "/tmp/sock")

    record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert record["event"] == "Gateway listening on /tmp/sock"
    assert record["level"] == "debug"
    assert record["logger"] == "taskrelay.test"


def test_structlog_events_share_handler(restore_logging: None, capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging(json_output=True)
    get_logger("taskrelay.cli").info("run_started", backend="claude")

    record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert record["event"] == "run_started"
    assert record["backend"] == "claude"
