"""Pydantic schemas for matching configuration and endpoints.

MatchingConfig is the tuning surface of the engine. It is built once per
request from defaults plus the tenant's org.settings_json["matching"]
overrides and passed explicitly into the scorer, decision policy and
learning feedback.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class MatchingConfig(BaseModel):
    """Weights, thresholds and decay curves for transaction matching.

    Score weights are points out of 100. The pattern boost is added on top
    and the total is capped at 100.
    """

    # Feature weights (sum to 100)
    amount_weight: float = Field(default=40.0, ge=0, le=100)
    date_weight: float = Field(default=20.0, ge=0, le=100)
    reference_weight: float = Field(default=15.0, ge=0, le=100)
    counterparty_weight: float = Field(default=25.0, ge=0, le=100)

    # Amount: full weight within tolerance, linear decay to zero at cutoff
    amount_tolerance_pct: float = Field(default=1.0, ge=0, le=100)
    amount_cutoff_pct: float = Field(default=20.0, gt=0, le=100)

    # Date: linear decay to zero at max offset
    date_max_offset_days: int = Field(default=7, ge=1, le=365)

    # Reference / description token-Jaccard floor
    reference_min_similarity: float = Field(default=0.2, ge=0, le=1)

    # Counterparty rapidfuzz token_sort_ratio floor (0-100)
    counterparty_fuzzy_threshold: float = Field(default=85.0, ge=0, le=100)

    # Learned patterns
    pattern_boost_cap: float = Field(default=10.0, ge=0, le=50)
    pattern_baseline_strength: float = Field(default=1.0, gt=0)
    pattern_increment: float = Field(default=1.0, gt=0)
    pattern_rejection_penalty: float = Field(default=1.0, gt=0)

    # Decision thresholds
    auto_threshold: int = Field(default=85, ge=0, le=100)
    suggest_threshold: int = Field(default=50, ge=0, le=100)
    min_margin: int = Field(default=10, ge=0, le=100)

    # Confidence bands
    high_band: int = Field(default=85, ge=0, le=100)
    medium_band: int = Field(default=60, ge=0, le=100)

    # Features below this many points are not listed as reasons
    reason_min_points: float = Field(default=1.0, ge=0)

    # Candidate pre-filter
    candidate_limit: int = Field(default=10, ge=1, le=100)
    candidate_date_window_days: int = Field(default=30, ge=1, le=365)
    candidate_amount_window_pct: float = Field(default=20.0, gt=0, le=100)

    # Batch
    max_batch_size: int = Field(default=100, ge=1, le=1000)
    batch_workers: int = Field(default=1, ge=1, le=32)
    max_suggestions: int = Field(default=5, ge=1, le=50)

    @model_validator(mode="after")
    def check_consistency(self) -> "MatchingConfig":
        """Reject configurations that would make the policy incoherent."""
        total = self.amount_weight + self.date_weight + self.reference_weight + self.counterparty_weight
        if abs(total - 100.0) > 1e-6:
            raise ValueError(f"Feature weights must sum to 100, got {total}")
        if self.suggest_threshold > self.auto_threshold:
            raise ValueError("suggest_threshold must not exceed auto_threshold")
        if self.medium_band > self.high_band:
            raise ValueError("medium_band must not exceed high_band")
        if self.amount_tolerance_pct >= self.amount_cutoff_pct:
            raise ValueError("amount_tolerance_pct must be below amount_cutoff_pct")
        return self

    @classmethod
    def with_overrides(cls, overrides: Optional[Dict[str, Any]] = None, **defaults: Any) -> "MatchingConfig":
        """Build a config from process defaults plus tenant overrides."""
        values = dict(defaults)
        values.update(overrides or {})
        return cls(**values)

    def tier_for(self, score: int) -> str:
        """Confidence tier of a score."""
        if score >= self.high_band:
            return "high"
        if score >= self.medium_band:
            return "medium"
        return "low"


class MatchOptionsSchema(BaseModel):
    """Options accepted by the match endpoints."""
    record_types: Optional[List[str]] = None
    date_window_days: Optional[int] = Field(default=None, ge=1, le=365)
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    apply_auto_match: bool = False
    save_suggestions: bool = False
    time_budget_ms: Optional[int] = Field(default=None, ge=1)


class FindMatchesRequest(BaseModel):
    """Request to match a single transaction."""
    transaction_id: UUID
    options: MatchOptionsSchema = Field(default_factory=MatchOptionsSchema)


class BatchMatchRequest(BaseModel):
    """Request to match several transactions."""
    transaction_ids: List[UUID] = Field(min_length=1)
    options: MatchOptionsSchema = Field(default_factory=MatchOptionsSchema)


class AutoMatchRequest(BaseModel):
    """Request to auto-match the tenant's unmatched transactions."""
    account_id: Optional[UUID] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: int = Field(default=50, ge=1, le=100)


class MatchReasonSchema(BaseModel):
    code: str
    points: float
    detail: str


class MatchCandidateSchema(BaseModel):
    """Scored candidate with confidence and reasons."""
    record_id: UUID
    record_type: str
    record_number: Optional[str]
    amount: Decimal
    due_date: Optional[date]
    score: int = Field(ge=0, le=100)
    confidence: str
    reasons: List[MatchReasonSchema]
    features: Dict[str, float]


class TransactionSummarySchema(BaseModel):
    id: UUID
    date: date
    amount: Decimal
    currency: str
    description: Optional[str]
    reference: Optional[str]
    matched: bool


class FindMatchesResponse(BaseModel):
    """Result of matching a single transaction."""
    transaction: TransactionSummarySchema
    candidates: List[MatchCandidateSchema]
    best_match: Optional[MatchCandidateSchema]
    suggestions: List[MatchCandidateSchema]
    outcome: str
    auto_match_applied: bool
    applied_match_id: Optional[UUID] = None
    candidates_evaluated: int
    processing_time_ms: float


class BatchEntrySchema(BaseModel):
    transaction_id: UUID
    status: str
    best_match: Optional[MatchCandidateSchema] = None
    candidates_evaluated: int = 0
    auto_match_applied: bool = False
    error: Optional[str] = None


class BatchMatchResponse(BaseModel):
    """Aggregate result of a batch run."""
    total: int
    candidates_evaluated: int
    auto_matched: int
    suggested: int
    unmatched: int
    failed: int
    skipped: int
    applied: int
    conflicts: int
    matches: List[BatchEntrySchema]
    statistics: Dict[str, Any]
    processing_time_ms: float


class ConfirmMatchRequest(BaseModel):
    """Request to confirm a match (learning loop)."""
    transaction_id: UUID
    record_id: UUID
    record_type: str
    score: Optional[int] = Field(default=None, ge=0, le=100)


class RejectMatchRequest(BaseModel):
    """Request to reject a suggested or applied match."""
    transaction_id: UUID
    record_id: Optional[UUID] = None
    record_type: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class UnmatchRequest(BaseModel):
    transaction_id: UUID


class BulkConfirmRequest(BaseModel):
    match_ids: List[UUID] = Field(min_length=1, max_length=50)


class TransactionMatchSchema(BaseModel):
    """Persisted match row."""
    id: UUID
    bank_transaction_id: UUID
    record_id: UUID
    record_type: str
    score: int
    confidence: str
    reasons: List[str]
    method: str
    status: str
    matched_by: Optional[UUID] = None
    matched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ActionResponse(BaseModel):
    success: bool = True
    message: str
    match: Optional[TransactionMatchSchema] = None


class BulkConfirmResponse(BaseModel):
    confirmed: int
    conflicts: int
    missing: int


class SuggestionListResponse(BaseModel):
    """Paginated list of pending suggestions."""
    items: List[TransactionMatchSchema]
    total: int
    page: int
    page_size: int


class PatternSchema(BaseModel):
    id: UUID
    fingerprint: str
    counterparty_key: str
    record_type: str
    strength: float
    confirmations: int
    rejections: int
    is_active: bool
    last_seen_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PatternCleanupRequest(BaseModel):
    """Retention bounds for pattern cleanup."""
    max_age_days: int = Field(default=180, ge=1, le=3650)
    max_patterns: int = Field(default=1000, ge=1, le=100000)


class PatternCleanupResponse(BaseModel):
    deleted: int
    deactivated: int
    remaining_active: int
