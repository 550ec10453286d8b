"""
Structured logging configuration.

Production writes one JSON object per line; development writes a coloured
console line with the workflow context appended as ``(key=value ...)``.
LOG_LEVEL overrides the default level (INFO in production, DEBUG otherwise).

Services attach context through ``extra={...}``.  Only the keys listed below
are rendered; anything else passed in ``extra`` stays on the record for
handlers that want it.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Populated by tracker.middleware.timing.
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")

# Populated by services: who acted, on what, with which result.
CONTEXT_FIELDS = (
    "organisation_id",
    "project_id",
    "entity_id",
    "actor_id",
    "member_id",
    "outcome",
    "event",
    "changed",
)

_COLOURS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


def _present(record, fields):
    return {key: getattr(record, key) for key in fields if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON document per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        doc.update(_present(record, REQUEST_FIELDS))
        doc.update(_present(record, CONTEXT_FIELDS))
        if record.exc_info and record.exc_info[0] is not None:
            doc["exception"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output for local development."""

    def format(self, record: logging.LogRecord) -> str:
        colour = _COLOURS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{colour}{stamp} {record.levelname:<8}{_RESET} {record.name}: {record.getMessage()}"

        context = _present(record, CONTEXT_FIELDS)
        if context:
            line += " (" + " ".join(f"{k}={v}" for k, v in context.items()) + ")"
        if getattr(record, "request_id", None):
            line += f" [req {record.request_id}]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*'s environment."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ConsoleFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    # The test suite builds the app more than once.
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if is_prod else "console")
