"""Tests for rbuild.logging configuration: file, jsonl and per-module levels."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from rbuild.logging import configure, get_logger, get_metrics, parse_and_log


@pytest.fixture
def reset_logging():
    yield
    configure({})


def test_file_handler_and_metrics(tmp_path: Path, reset_logging) -> None:
    log_file = tmp_path / "logs" / "rbuild.log"
    configure({"level": "WARNING", "file": str(log_file), "module_levels": {"noisy": "ERROR"}})
    before = get_metrics()["WARNING"]

    get_logger("build").warning("disk almost full")
    get_logger("noisy").warning("should be filtered")
    get_logger("build").debug("debug goes to the file")

    text = log_file.read_text(encoding="utf-8")
    assert "[build] disk almost full" in text
    assert "debug goes to the file" in text
    assert "should be filtered" not in text
    assert get_metrics()["WARNING"] >= before + 1


def test_jsonl_transparency_log(tmp_path: Path, reset_logging) -> None:
    path = tmp_path / "transparency.jsonl"
    configure({"console": {"enabled": False}, "jsonl": {"enabled": True, "path": str(path)}})

    parse_and_log("cli", logging.INFO, "built hello.deb")

    records = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert {"level": "INFO", "module": "cli", "message": "built hello.deb"}.items() <= records[-1].items()
