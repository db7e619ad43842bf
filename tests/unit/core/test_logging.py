# tests/unit/core/test_logging.py
"""Tests for structlog/stdlib logging configuration."""

from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from railflow.core.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestConfigureLogging:
    def test_json_output_from_structlog(self) -> None:
        stream = io.StringIO()
        configure_logging(json_output=True, stream=stream)

        get_logger("railflow.test").info("run_started", run_id="r1")

        entry = json.loads(stream.getvalue().strip())
        assert entry["event"] == "run_started"
        assert entry["run_id"] == "r1"
        assert entry["level"] == "info"
        assert "_record" not in entry

    def test_stdlib_records_share_the_format(self) -> None:
        stream = io.StringIO()
        configure_logging(json_output=True, stream=stream)

        logging.getLogger("railflow.stdlib").warning("disk %s", "full")

        assert json.loads(stream.getvalue().strip())["event"] == "disk full"

    def test_level_filters(self) -> None:
        stream = io.StringIO()
        configure_logging(json_output=True, level="WARNING", stream=stream)

        get_logger("railflow.test").info("hidden")

        assert stream.getvalue() == ""

    def test_noisy_loggers_quieted(self) -> None:
        configure_logging(level="DEBUG", stream=io.StringIO())

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING

    def test_log_file_is_json(self, tmp_path: Path) -> None:
        log_path = tmp_path / "logs" / "worker.log"
        configure_logging(log_path=log_path)

        get_logger("railflow.worker").info("worker_ready")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert json.loads(log_path.read_text(encoding="utf-8").strip())["event"] == "worker_ready"
