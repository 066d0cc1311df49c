"""
Logging configuration for the admission-control layer.
Console output in either a readable line format or structured JSON.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Extra attributes promoted into structured output when present on a record
STRUCTURED_FIELDS = (
    "client_ip",
    "user_id",
    "scope_key",
    "action",
    "analysis_id",
    "target_type",
    "target_id",
    "severity",
    "error",
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field_name in STRUCTURED_FIELDS:
            if hasattr(record, field_name):
                log_entry[field_name] = getattr(record, field_name)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", json_output: bool = False,
                  logger_name: Optional[str] = None) -> logging.Logger:
    """Install a single console handler on the target logger (root by default)."""
    target = logging.getLogger(logger_name)
    target.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    target.setLevel(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    target.addHandler(handler)

    return target
