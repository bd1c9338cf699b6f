"""Tests for logging setup."""

import json
import logging

from fakes import make_settings
from scrape_engine.logging_config import get_logger, setup_logging


def test_json_file_logging_with_context(tmp_path):
    root = setup_logging(settings=make_settings(log_dir=str(tmp_path), log_level="DEBUG"))
    try:
        get_logger("scrape_engine.test", job_id="42").error("lease lost")
        for handler in root.handlers:
            handler.flush()

        app_lines = (tmp_path / "logs" / "app.log").read_text().splitlines()
        record = json.loads(app_lines[-1])
        assert record["message"] == "lease lost"
        assert record["level"] == "ERROR"
        assert record["job_id"] == "42"
        assert record["timestamp"].endswith("Z")

        assert (tmp_path / "logs" / "error.log").read_text().strip()
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)


def test_console_only_when_json_disabled(tmp_path):
    root = setup_logging(settings=make_settings(log_dir=str(tmp_path), log_json=False, log_level="WARNING"))
    try:
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert not (tmp_path / "logs").exists()
    finally:
        root.handlers.clear()
