"""Logging setup for the API process and the Celery worker.

One JSON object per line on stdout. Matching and learning code passes
tenant and transaction identifiers through `extra=`; the fields listed in
CONTEXT_FIELDS are lifted into the payload so log lines can be filtered
per org or per transaction.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from .request_id import get_request_id

CONTEXT_FIELDS = (
    "org_id",
    "user_id",
    "transaction_id",
    "record_id",
    "match_id",
    "outcome",
    "score",
    "duration_ms",
)

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


class RequestIDFilter(logging.Filter):
    """Stamp the current request ID (or batch worker's copied one) on each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    context = {}
    for field in CONTEXT_FIELDS:
        value = getattr(record, field, None)
        if value is None:
            continue
        context[field] = value if isinstance(value, (int, float, bool)) else str(value)
    return context


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None) or get_request_id(),
            "message": record.getMessage(),
        }
        payload.update(_context(record))
        if record.exc_info:
            payload["error"] = str(record.exc_info[1])
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines when True, a plain text line otherwise
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDFilter())
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "celery.redirected"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
