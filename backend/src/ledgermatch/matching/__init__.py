"""Transaction matching for bank reconciliation.

This package implements the reconciliation pipeline:
- Candidate lookup (tenant-scoped pre-filter over ledger records)
- Weighted scoring (amount, date, reference, counterparty, learned patterns)
- Decision policy (auto-match / suggest / unmatched with margin check)
- Match service (single write path, upsert keyed by transaction)

The engine, service and router are imported from their modules directly
(ledgermatch.matching.engine etc.) because they depend on the learning
package, which in turn depends on the ports defined here.
"""

from .ports import (
    MatcherPort,
    CandidateSourcePort,
    TransactionSnapshot,
    Candidate,
    MatchResult,
    MatchDecision,
    MatchOptions,
    MatcherError,
    NotFoundError,
    ValidationError,
    ConflictError,
    LearningUpdateError,
)
from .schemas import MatchingConfig
from .scorer import MatchScorer
from .decision import DecisionPolicy

__all__ = [
    "MatcherPort",
    "CandidateSourcePort",
    "TransactionSnapshot",
    "Candidate",
    "MatchResult",
    "MatchDecision",
    "MatchOptions",
    "MatcherError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "LearningUpdateError",
    "MatchingConfig",
    "MatchScorer",
    "DecisionPolicy",
]
