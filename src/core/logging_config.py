"""Logging setup for the inventory API and its reconciliation job.

Production (``PRODUCTION`` or ``FLY_APP_NAME`` set) writes one JSON object per
line so multi-line tracebacks stay in a single log entry. Development keeps
the plain ``asctime - name - level - message`` format.
"""

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord has; anything else arrived through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Context fields promoted to the top level of a JSON line
_TOP_LEVEL_FIELDS = ("tenant_id", "operation", "success", "duration_ms")

_LIBRARY_LOGGERS = ("werkzeug", "waitress", "sqlalchemy.engine")


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """Single-line JSON records for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = _extra_fields(record)
        for field in _TOP_LEVEL_FIELDS:
            if field in extra:
                entry[field] = extra.pop(field)
        if extra:
            entry["extra"] = extra
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def is_production_logging() -> bool:
    return bool(os.environ.get("FLY_APP_NAME") or os.environ.get("PRODUCTION"))


def setup_structured_logging(level: int = logging.INFO) -> None:
    """Configure the root logger once at process start."""
    if not is_production_logging():
        logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", force=True)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # These libraries attach their own handlers and would print plain text
    for name in _LIBRARY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.handlers = [handler]
        library_logger.propagate = False

    logging.getLogger(__name__).info("JSON logging enabled")


class InventoryOpsLogger:
    """One log line per reservation, sweep or workflow transition.

    Fields travel as ``extra`` so the JSON formatter can index them; the
    message itself stays readable in development output.
    """

    def __init__(self, logger_name: str = "inventory.ops"):
        self.logger = logging.getLogger(logger_name)

    def log_inventory_operation(
        self,
        operation: str,
        success: bool,
        tenant_id: str | None = None,
        details: dict[str, Any] | None = None,
        error: str | None = None,
        duration_ms: float | None = None,
        level: int | None = None,
    ) -> None:
        """Failures log at ERROR unless ``level`` says otherwise, e.g. INFO for a capacity conflict."""
        extra: dict[str, Any] = {"operation": operation, "success": success, "tenant_id": tenant_id}
        if details:
            extra["details"] = details
        if error:
            extra["error"] = error
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms

        outcome = "ok" if success else f"failed: {error}"
        message = f"{operation} [{tenant_id or '-'}] {outcome}"
        if level is None:
            level = logging.INFO if success else logging.ERROR
        self.logger.log(level, message, extra=extra)


inventory_ops_logger = InventoryOpsLogger()
