"""Structured logging for the ledger worker.

Records carry ``headmaster_*`` extras (user, hour, job, error class) set by the
engine and the worker loop. HEADMASTER_LOG_FORMAT selects "json" (default) or
"text"; both render the extras.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

EXTRA_PREFIX = "headmaster_"

# Per-request INFO lines from the telemetry client.
QUIET_LOGGERS = ("httpx", "httpcore")


def ledger_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items() if key.startswith(EXTRA_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(ledger_extras(record))
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = ledger_extras(record)
        if not extras:
            return line
        tail = " ".join(f"{key[len(EXTRA_PREFIX):]}={value}" for key, value in extras.items())
        head, sep, rest = line.partition("\n")
        return f"{head} [{tail}]{sep}{rest}"


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
