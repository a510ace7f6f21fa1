"""
Logging setup for the service.

- LOG_FORMAT=text (default): human-readable lines on stderr
- LOG_FORMAT=json: one JSON object per line for log aggregation
- LOG_LEVEL controls the package logger level (default INFO)
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

PACKAGE_LOGGER = "data_analyzer"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in ("report_id", "session_id", "state"):
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        return json.dumps(entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        report_id = getattr(record, "report_id", None)
        suffix = f" [{report_id}]" if report_id else ""
        base = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    use_json = os.getenv("LOG_FORMAT", "text").strip().lower() == "json"

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    # reconfiguring replaces the previous handler
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())
    logger.addHandler(handler)
    return logger
