"""JSON log formatter.

Emits each log record as a single-line JSON object so log aggregators can
index fields without regex parsing.  Activate with
``API_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2026-10-18T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "membership_api.services.reconciliation_service",
        "message": "Reconciliation complete",
        "job": "membership:reconciliation",   // present for job log lines
        "request": { ... },                   // present for access log lines
        "exc_info": "Traceback ..."           // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Extra attributes copied into the payload when set via ``extra={...}``.
_EXTRA_FIELDS: tuple[str, ...] = ("job", "execution_id", "member_id", "event_id", "request")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_json_logging(level: int = logging.INFO) -> None:
    """Replace root handlers with a single JSON stream handler."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
