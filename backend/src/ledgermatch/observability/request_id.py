"""Correlation ID carried by a context variable.

Batch workers run each evaluation inside a copy of the request context, so
their log lines keep the request's ID.
"""

import uuid
from contextvars import ContextVar
from typing import Optional

NO_REQUEST_ID = "no-request-id"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def generate_request_id() -> str:
    return uuid.uuid4().hex


def get_request_id() -> str:
    """ID of the current request, or NO_REQUEST_ID for worker and CLI code."""
    return request_id_var.get() or NO_REQUEST_ID


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)
