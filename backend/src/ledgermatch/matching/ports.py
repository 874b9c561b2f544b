"""Matching ports and interfaces for hexagonal architecture.

Plain dataclasses cross the boundary between storage and the pure scoring
code: the scorer and decision policy never see ORM rows or sessions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Tuple
from uuid import UUID


@dataclass(frozen=True)
class TransactionSnapshot:
    """Immutable view of a bank transaction used for scoring.

    Attributes:
        id: Bank transaction UUID
        org_id: Owning organization
        amount: Signed amount (positive = credit, negative = debit)
        currency: ISO currency code
        date: Booking date
        description: Free-text booking description
        reference: Payment reference supplied by the bank
        counterparty_name: Payer/payee name
        counterparty_account: Payer/payee IBAN or account number
        matched: Whether an active match is already applied
        account_id: Bank account the line belongs to
    """
    id: UUID
    org_id: UUID
    amount: Decimal
    currency: str
    date: date
    description: Optional[str] = None
    reference: Optional[str] = None
    counterparty_name: Optional[str] = None
    counterparty_account: Optional[str] = None
    matched: bool = False
    account_id: Optional[UUID] = None

    @property
    def direction(self) -> str:
        return "credit" if self.amount >= 0 else "debit"


@dataclass(frozen=True)
class Candidate:
    """Business record eligible to reconcile against a transaction.

    Attributes:
        id: Ledger record UUID
        org_id: Owning organization
        record_type: invoice, payment, bill, expense, expected_receipt
        amount: Open amount (positive)
        currency: ISO currency code
        due_date: Due / expected date
        number: Document number (e.g. INV-2024-0012)
        counterparty_name: Client or vendor name
        counterparty_account: Client or vendor IBAN / account number
        reference: Payment reference printed on the document
        description: Free-text description
        status: Source status
    """
    id: UUID
    org_id: UUID
    record_type: str
    amount: Decimal
    currency: str
    due_date: Optional[date] = None
    number: Optional[str] = None
    counterparty_name: Optional[str] = None
    counterparty_account: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class PatternSnapshot:
    """Active learned pattern as seen by the scorer."""
    fingerprint: str
    counterparty_key: str
    record_type: str
    strength: float


@dataclass(frozen=True)
class MatchReason:
    """One feature's contribution to a score."""
    code: str
    points: float
    detail: str


@dataclass
class MatchResult:
    """Score of one (transaction, candidate) pair.

    Attributes:
        candidate: Scored candidate
        score: Final score 0-100
        confidence: Tier derived from score (high, medium, low)
        reasons: Non-trivial contributions, largest first
        features: Raw per-feature points for debugging
        date_offset_days: Absolute day distance (None if candidate has no date)
    """
    candidate: Candidate
    score: int
    confidence: str
    reasons: List[MatchReason]
    features: Dict[str, float]
    date_offset_days: Optional[int]

    @property
    def reason_codes(self) -> List[str]:
        return [reason.code for reason in self.reasons]


@dataclass
class MatchDecision:
    """Outcome of the decision policy for one transaction.

    Attributes:
        outcome: auto_match, suggest or unmatched
        best_match: Top ranked result (None when unmatched)
        auto_apply: Whether best_match may be applied without review
        suggestions: Results above the suggest threshold (when not auto)
        ranked: All results in rank order
        margin: Score gap between the top two results
        already_matched: Transaction already carries an active match
    """
    outcome: str
    best_match: Optional[MatchResult]
    auto_apply: bool
    suggestions: List[MatchResult]
    ranked: List[MatchResult]
    margin: int = 0
    already_matched: bool = False


@dataclass(frozen=True)
class CandidateScope:
    """Tenant scope and pre-filter bounds for a candidate lookup."""
    org_id: UUID
    record_types: Optional[Tuple[str, ...]] = None
    date_window_days: int = 30
    amount_window_pct: float = 20.0
    limit: int = 10


@dataclass
class MatchOptions:
    """Per-call options for find_matches / batch_match.

    Attributes:
        record_types: Restrict candidates to these record types
        date_window_days: Candidate search window around the booking date
        limit: Maximum candidates scored per transaction
        apply_auto_match: Persist decided auto-matches
        save_suggestions: Persist the best suggestion for review
        time_budget_ms: Overall budget for a batch (None = unbounded)
        actor_id: User on whose behalf matches are applied
    """
    record_types: Optional[List[str]] = None
    date_window_days: Optional[int] = None
    limit: Optional[int] = None
    apply_auto_match: bool = False
    save_suggestions: bool = False
    time_budget_ms: Optional[int] = None
    actor_id: Optional[UUID] = None


@dataclass
class FindMatchesResult:
    """Result of matching a single transaction."""
    transaction: TransactionSnapshot
    candidates: List[MatchResult]
    decision: MatchDecision
    candidates_evaluated: int
    processing_time_ms: float
    auto_match_applied: bool = False
    applied_match_id: Optional[UUID] = None

    @property
    def best_match(self) -> Optional[MatchResult]:
        return self.decision.best_match


@dataclass
class BatchEntry:
    """Per-transaction entry of a batch result.

    status is one of auto_match, suggest, unmatched, failed, skipped.
    """
    transaction_id: UUID
    status: str
    result: Optional[FindMatchesResult] = None
    error: Optional[str] = None


@dataclass
class BatchMatchResult:
    """Aggregate result of a batch run. Entries keep input order."""
    total: int
    candidates_evaluated: int
    auto_matched: int
    suggested: int
    unmatched: int
    failed: int
    skipped: int
    matches: List[BatchEntry]
    statistics: Dict[str, object] = field(default_factory=dict)
    processing_time_ms: float = 0.0
    applied: int = 0
    conflicts: int = 0


class CandidateSourcePort(ABC):
    """Port interface for candidate lookup.

    Implementations:
    - SqlCandidateSource: ledger_record table
    - InMemoryCandidateSource: fixed list (tests, offline runs)
    """

    @abstractmethod
    def candidates(self, transaction: TransactionSnapshot, scope: CandidateScope) -> List[Candidate]:
        """Return a bounded list of plausible candidates.

        Args:
            transaction: Transaction to find candidates for
            scope: Tenant scope and pre-filter bounds

        Returns:
            At most scope.limit candidates; empty list when none are plausible

        Raises:
            NotFoundError: If scope.org_id does not own the transaction
        """
        pass


class MatcherPort(ABC):
    """Port interface for transaction matching."""

    @abstractmethod
    def find_matches(self, transaction_id: UUID, options: Optional[MatchOptions] = None) -> FindMatchesResult:
        """Match one transaction of the current tenant.

        Raises:
            NotFoundError: If the transaction is not in the tenant scope
        """
        pass

    @abstractmethod
    def batch_match(self, transaction_ids: List[UUID], options: Optional[MatchOptions] = None) -> BatchMatchResult:
        """Match many transactions independently (same order as inputs).

        Raises:
            ValidationError: If the batch is empty or too large
        """
        pass


class MatcherError(Exception):
    """Base exception for reconciliation errors."""
    pass


class NotFoundError(MatcherError):
    """Transaction or record does not exist in the caller's tenant."""
    pass


class ValidationError(MatcherError):
    """Malformed input: missing id, batch too large, option out of range."""
    pass


class ConflictError(MatcherError):
    """Transaction already carries an active match to another record."""
    pass


class LearningUpdateError(MatcherError):
    """Pattern store update failed during confirmation or rejection."""
    pass
