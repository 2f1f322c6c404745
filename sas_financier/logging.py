"""Logging setup: one stdout handler, plain or JSON lines."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

STANDARD_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers kept at WARNING whatever the app level.
QUIET_LOGGERS = ("uvicorn.access", "multipart")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, accents kept readable."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def _formatter(format_type: str) -> logging.Formatter:
    if format_type == "json":
        return JsonFormatter()
    return logging.Formatter(fmt=STANDARD_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(level: str = "INFO", format_type: str = "standard") -> None:
    """Replace the root handlers with a single stdout handler.

    ``format_type`` is ``"standard"`` or ``"json"``; an unknown level
    falls back to INFO.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(_formatter(format_type))

    root = logging.getLogger()
    root.setLevel(log_level)
    for old in root.handlers[:]:
        root.removeHandler(old)
    root.addHandler(handler)

    logging.getLogger("sas_financier").setLevel(log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
