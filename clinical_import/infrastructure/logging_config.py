"""Logging setup for clinical-import.

Import runs log one line per finished import plus a RECORD REJECTION line
for every record an importer drops. The CLI writes these to stderr, as JSON
lines when ``CI_LOG_JSON`` is set and as plain text otherwise.

Security Impact:
    - Rejected values appear truncated, never in full
    - Context travels in ``extra=`` fields rather than being formatted into
      the message text
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else was passed through ``extra``.
_RESERVED_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RESERVED_ATTRIBUTES and not key.startswith("_")
        )
        return json.dumps(log_data, default=str)


def _formatter(use_json: bool) -> logging.Formatter:
    if use_json:
        return StructuredFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(use_json: bool = False, log_level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """Route all clinical-import logging through a single root handler.

    Parameters:
        use_json: Emit JSON lines instead of plain text
        log_level: Level name; unknown names fall back to INFO
        stream: Output stream, stderr by default so command output stays clean
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_formatter(use_json))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Logger for a clinical-import module (pass ``__name__``)."""
    return logging.getLogger(name)
