"""Tests for structured logging configuration."""

import io
import json
import logging
import sys

import pytest

from clinical_import.infrastructure.logging_config import StructuredFormatter, get_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way the test runner configured it."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestStructuredFormatter:
    """JSON log lines."""

    def test_extra_fields_included(self):
        record = logging.LogRecord("clinical_import.test", logging.WARNING, __file__, 10, "Row %s rejected", (3,), None)
        record.import_file = "ward.csv"

        log_data = json.loads(StructuredFormatter().format(record))

        assert log_data["message"] == "Row 3 rejected"
        assert log_data["level"] == "WARNING"
        assert log_data["logger"] == "clinical_import.test"
        assert log_data["import_file"] == "ward.csv"
        assert "args" not in log_data
        assert log_data["source"].endswith(":10")
        assert log_data["timestamp"].endswith("Z")

    def test_exception_included(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        log_data = json.loads(StructuredFormatter().format(record))
        assert "ValueError: bad row" in log_data["exception"]


class TestSetupLogging:
    """Root logger configuration."""

    def test_json_output(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(use_json=True, log_level="debug", stream=stream)

        get_logger("clinical_import.sample").debug("hello", extra={"counts": {"patients": 1}})

        log_data = json.loads(stream.getvalue().strip())
        assert log_data["message"] == "hello"
        assert log_data["counts"] == {"patients": 1}
        assert logging.getLogger().level == logging.DEBUG

    def test_text_output(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(log_level="WARNING", stream=stream)

        logger = get_logger("clinical_import.sample")
        logger.info("hidden")
        logger.warning("shown")

        output = stream.getvalue()
        assert "hidden" not in output
        assert "clinical_import.sample - WARNING - shown" in output

    def test_unknown_level_falls_back_to_info(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(log_level="chatty", stream=stream)

        assert logging.getLogger().level == logging.INFO
        assert len(logging.getLogger().handlers) == 1
