"""Prometheus metrics for the reconciliation engine."""

from prometheus_client import Counter, Histogram

# Matching metrics
match_evaluations_total = Counter(
    "ledgermatch_match_evaluations_total",
    "Transactions evaluated by the matching engine",
    ["outcome"]  # outcome: auto_match|suggest|unmatched|failed|skipped
)

match_candidates_per_transaction = Histogram(
    "ledgermatch_match_candidates_per_transaction",
    "Candidates scored per transaction",
    buckets=[0, 1, 2, 3, 5, 10, 20, 50, 100]
)

match_score_histogram = Histogram(
    "ledgermatch_match_best_score",
    "Best candidate score per evaluated transaction",
    buckets=[0, 10, 20, 30, 40, 50, 60, 70, 80, 85, 90, 95, 100]
)

batch_duration_seconds = Histogram(
    "ledgermatch_batch_duration_seconds",
    "Wall time of a batch match run in seconds",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Match state changes
matches_applied_total = Counter(
    "ledgermatch_matches_applied_total",
    "Match state changes written",
    ["action"]  # action: auto_confirmed|confirmed|rejected|unmatched|suggested
)

match_conflicts_total = Counter(
    "ledgermatch_match_conflicts_total",
    "Apply attempts refused because another active match exists"
)

# Learning metrics
learning_updates_total = Counter(
    "ledgermatch_learning_updates_total",
    "Pattern updates from feedback",
    ["event_type"]  # event_type: MATCH_CONFIRMED|MATCH_REJECTED
)

learning_failures_total = Counter(
    "ledgermatch_learning_failures_total",
    "Pattern updates that failed and were skipped",
    ["event_type"]
)

patterns_cleaned_total = Counter(
    "ledgermatch_patterns_cleaned_total",
    "Patterns removed or deactivated by retention cleanup",
    ["action"]  # action: deleted|deactivated
)
