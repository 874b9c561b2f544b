"""Reconciliation API endpoints.

Errors from the matching layer propagate to the application exception
handlers (NotFoundError -> 404, ValidationError -> 400, ConflictError -> 409).
"""

from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_db
from ..dependencies import TenantContext, validate_org_exists
from ..learning.pattern_store import PatternStore
from .engine import MatchingEngine
from .ports import MatchOptions, MatchResult, FindMatchesResult, BatchMatchResult
from .schemas import (
    MatchOptionsSchema,
    FindMatchesRequest,
    FindMatchesResponse,
    BatchMatchRequest,
    BatchMatchResponse,
    BatchEntrySchema,
    AutoMatchRequest,
    MatchCandidateSchema,
    MatchReasonSchema,
    TransactionSummarySchema,
    ConfirmMatchRequest,
    RejectMatchRequest,
    UnmatchRequest,
    BulkConfirmRequest,
    BulkConfirmResponse,
    ActionResponse,
    TransactionMatchSchema,
    SuggestionListResponse,
    PatternSchema,
    PatternCleanupRequest,
    PatternCleanupResponse,
)
from .service import MatchService, get_matching_config


router = APIRouter(prefix="/api/v1/reconciliation", tags=["reconciliation"])


def _engine(db: Session, tenant: TenantContext) -> MatchingEngine:
    config = get_matching_config(db, tenant.org_id)
    return MatchingEngine(db, tenant.org_id, config)


def _service(db: Session, tenant: TenantContext) -> MatchService:
    return MatchService(db, tenant.org_id, get_matching_config(db, tenant.org_id))


def _options(schema: MatchOptionsSchema, tenant: TenantContext) -> MatchOptions:
    return MatchOptions(
        record_types=schema.record_types,
        date_window_days=schema.date_window_days,
        limit=schema.limit,
        apply_auto_match=schema.apply_auto_match,
        save_suggestions=schema.save_suggestions,
        time_budget_ms=schema.time_budget_ms,
        actor_id=tenant.user_id,
    )


def _candidate(result: Optional[MatchResult]) -> Optional[MatchCandidateSchema]:
    if result is None:
        return None
    candidate = result.candidate
    return MatchCandidateSchema(
        record_id=candidate.id,
        record_type=candidate.record_type,
        record_number=candidate.number,
        amount=candidate.amount,
        due_date=candidate.due_date,
        score=result.score,
        confidence=result.confidence,
        reasons=[MatchReasonSchema(code=r.code, points=round(r.points, 2), detail=r.detail) for r in result.reasons],
        features=result.features,
    )


def _find_matches_response(result: FindMatchesResult) -> FindMatchesResponse:
    transaction = result.transaction
    return FindMatchesResponse(
        transaction=TransactionSummarySchema(
            id=transaction.id,
            date=transaction.date,
            amount=transaction.amount,
            currency=transaction.currency,
            description=transaction.description,
            reference=transaction.reference,
            matched=transaction.matched,
        ),
        candidates=[_candidate(r) for r in result.candidates],
        best_match=_candidate(result.best_match),
        suggestions=[_candidate(r) for r in result.decision.suggestions],
        outcome=result.decision.outcome,
        auto_match_applied=result.auto_match_applied,
        applied_match_id=result.applied_match_id,
        candidates_evaluated=result.candidates_evaluated,
        processing_time_ms=result.processing_time_ms,
    )


def _batch_response(result: BatchMatchResult) -> BatchMatchResponse:
    return BatchMatchResponse(
        total=result.total,
        candidates_evaluated=result.candidates_evaluated,
        auto_matched=result.auto_matched,
        suggested=result.suggested,
        unmatched=result.unmatched,
        failed=result.failed,
        skipped=result.skipped,
        applied=result.applied,
        conflicts=result.conflicts,
        matches=[
            BatchEntrySchema(
                transaction_id=entry.transaction_id,
                status=entry.status,
                best_match=_candidate(entry.result.best_match) if entry.result else None,
                candidates_evaluated=entry.result.candidates_evaluated if entry.result else 0,
                auto_match_applied=entry.result.auto_match_applied if entry.result else False,
                error=entry.error,
            )
            for entry in result.matches
        ],
        statistics=result.statistics,
        processing_time_ms=result.processing_time_ms,
    )


@router.post("/match", response_model=FindMatchesResponse)
def find_matches(
    request: FindMatchesRequest,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Score candidates for one transaction and decide the outcome.

    With options.apply_auto_match a decided auto-match is applied; with
    options.save_suggestions the best suggestion is stored for review.
    """
    engine = _engine(db, tenant)
    result = engine.find_matches(request.transaction_id, _options(request.options, tenant))
    return _find_matches_response(result)


@router.post("/batch", response_model=BatchMatchResponse)
def batch_match(
    request: BatchMatchRequest,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Match up to max_batch_size transactions independently."""
    engine = _engine(db, tenant)
    result = engine.batch_match(request.transaction_ids, _options(request.options, tenant))
    return _batch_response(result)


@router.post("/auto-match", response_model=BatchMatchResponse)
def auto_match(
    request: AutoMatchRequest,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Apply auto-matches to the tenant's unmatched transactions."""
    engine = _engine(db, tenant)
    result = engine.auto_match_unmatched(
        account_id=request.account_id,
        date_from=request.date_from,
        date_to=request.date_to,
        limit=request.limit,
        actor_id=tenant.user_id,
    )
    return _batch_response(result)


@router.post("/confirm", response_model=ActionResponse)
def confirm_match(
    request: ConfirmMatchRequest,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Confirm a transaction -> record match (feeds the learning loop)."""
    match = _service(db, tenant).confirm_match(
        request.transaction_id,
        request.record_id,
        request.record_type,
        score=request.score,
        actor_id=tenant.user_id,
    )
    return ActionResponse(message="Match confirmed", match=TransactionMatchSchema.model_validate(match))


@router.post("/reject", response_model=ActionResponse)
def reject_match(
    request: RejectMatchRequest,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Reject a suggested or applied match (feeds the learning loop)."""
    match = _service(db, tenant).reject_match(
        request.transaction_id,
        record_id=request.record_id,
        record_type=request.record_type,
        reason=request.reason,
        actor_id=tenant.user_id,
    )
    return ActionResponse(
        message="Match rejected",
        match=TransactionMatchSchema.model_validate(match) if match else None,
    )


@router.post("/unmatch", response_model=ActionResponse)
def unmatch(
    request: UnmatchRequest,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Undo the active match of a transaction."""
    match = _service(db, tenant).unmatch(request.transaction_id, actor_id=tenant.user_id)
    return ActionResponse(message="Transaction unmatched", match=TransactionMatchSchema.model_validate(match))


@router.get("/stats")
def matching_stats(
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
) -> Dict[str, Any]:
    """Reconciliation statistics of the tenant."""
    return _service(db, tenant).matching_stats()


@router.get("/suggestions", response_model=SuggestionListResponse)
def pending_suggestions(
    min_score: int = Query(0, ge=0, le=100, description="Minimum score"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Suggested matches awaiting review, best score first."""
    items, total = _service(db, tenant).pending_suggestions(min_score=min_score, page=page, page_size=page_size)
    return SuggestionListResponse(
        items=[TransactionMatchSchema.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/suggestions/bulk-confirm", response_model=BulkConfirmResponse)
def bulk_confirm_suggestions(
    request: BulkConfirmRequest,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Confirm up to 50 pending suggestions."""
    counts = _service(db, tenant).bulk_confirm_suggestions(request.match_ids, actor_id=tenant.user_id)
    return BulkConfirmResponse(**counts)


@router.get("/patterns", response_model=List[PatternSchema])
def list_patterns(
    record_type: Optional[str] = Query(None, description="Filter by record type"),
    min_strength: float = Query(0.0, ge=0, description="Minimum strength"),
    limit: int = Query(50, ge=1, le=100, description="Maximum patterns"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Active learned patterns, strongest first."""
    patterns = PatternStore(db).active_patterns(
        tenant.org_id, record_type=record_type, min_strength=min_strength, limit=limit
    )
    return [PatternSchema.model_validate(p) for p in patterns]


@router.get("/patterns/stats")
def pattern_statistics(
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
) -> Dict[str, Any]:
    """Learning statistics of the tenant."""
    return PatternStore(db).statistics(tenant.org_id)


@router.post("/patterns/cleanup", response_model=PatternCleanupResponse)
def cleanup_patterns(
    request: Optional[PatternCleanupRequest] = None,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(validate_org_exists),
):
    """Apply pattern retention bounds now (normally a nightly job)."""
    if request is None:
        settings = get_settings()
        request = PatternCleanupRequest(
            max_age_days=settings.PATTERN_CLEANUP_MAX_AGE_DAYS,
            max_patterns=settings.PATTERN_CLEANUP_MAX_PATTERNS,
        )
    result = PatternStore(db).cleanup(tenant.org_id, request.max_age_days, request.max_patterns)
    return PatternCleanupResponse(**result.to_dict())
