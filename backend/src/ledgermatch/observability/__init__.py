"""Observability: structured logging, request IDs, metrics and health checks."""

from .logging_config import configure_logging, get_logger
from .metrics import (
    match_evaluations_total,
    match_candidates_per_transaction,
    match_score_histogram,
    batch_duration_seconds,
    matches_applied_total,
    match_conflicts_total,
    learning_updates_total,
    learning_failures_total,
    patterns_cleaned_total,
)
from .request_id import request_id_var, get_request_id, set_request_id, generate_request_id
from .middleware import RequestIDMiddleware

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    # Metrics
    "match_evaluations_total",
    "match_candidates_per_transaction",
    "match_score_histogram",
    "batch_duration_seconds",
    "matches_applied_total",
    "match_conflicts_total",
    "learning_updates_total",
    "learning_failures_total",
    "patterns_cleaned_total",
    # Request ID
    "request_id_var",
    "get_request_id",
    "set_request_id",
    "generate_request_id",
    # Middleware
    "RequestIDMiddleware",
]
