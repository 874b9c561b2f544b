"""Matching engine: CandidateSource -> Scorer -> DecisionPolicy.

Pipeline per transaction:
1. Load the transaction in the tenant scope (NotFoundError otherwise)
2. Pull a bounded candidate list from the candidate source
3. Score every candidate against the pattern snapshot
4. Rank and decide auto_match / suggest / unmatched
5. Optionally apply the auto-match or persist the best suggestion

Batches evaluate transactions independently: one failure becomes a
failed entry, never an aborted batch. Results keep input order.
"""

import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date
from typing import Optional, List, Dict, Any, Mapping
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..learning.pattern_store import PatternStore
from ..models.bank_transaction import BankTransaction
from ..observability.metrics import (
    match_evaluations_total,
    match_candidates_per_transaction,
    match_score_histogram,
    batch_duration_seconds,
)
from .candidate_source import SqlCandidateSource, snapshot_transaction
from .decision import DecisionPolicy, OUTCOME_AUTO_MATCH, OUTCOME_SUGGEST, OUTCOME_UNMATCHED
from .ports import (
    MatcherPort,
    CandidateSourcePort,
    CandidateScope,
    MatchOptions,
    FindMatchesResult,
    BatchEntry,
    BatchMatchResult,
    PatternSnapshot,
    TransactionSnapshot,
    NotFoundError,
    ValidationError,
    ConflictError,
)
from .schemas import MatchingConfig
from .scorer import MatchScorer
from .service import MatchService

logger = logging.getLogger(__name__)

STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


class MatchingEngine(MatcherPort):
    """Tenant-scoped transaction matcher.

    The engine reads through its session and the candidate source; all
    writes go through the match service.
    """

    def __init__(
        self,
        db: Session,
        org_id: UUID,
        config: MatchingConfig,
        candidate_source: Optional[CandidateSourcePort] = None,
        pattern_store: Optional[PatternStore] = None,
        match_service: Optional[MatchService] = None,
    ):
        """Initialize matching engine.

        Args:
            db: Database session
            org_id: Organization UUID
            config: Matching configuration for the tenant
            candidate_source: Candidate lookup (defaults to SqlCandidateSource on db)
            pattern_store: Pattern repository (defaults to PatternStore on db)
            match_service: Write path for matches (defaults to MatchService on db)
        """
        self.db = db
        self.org_id = org_id
        self.config = config
        self.candidate_source = candidate_source or self._default_candidate_source(db, config)
        self.pattern_store = pattern_store or PatternStore(db)
        self.match_service = match_service or MatchService(db, org_id, config)
        self.scorer = MatchScorer(config)
        self.policy = DecisionPolicy(config)

    def find_matches(self, transaction_id: UUID, options: Optional[MatchOptions] = None) -> FindMatchesResult:
        """Match one transaction of the tenant.

        Raises:
            NotFoundError: If the transaction is not in the tenant scope
            ValidationError: If an option is out of range
            ConflictError: If apply_auto_match races another apply
        """
        options = options or MatchOptions()
        self._validate_options(options)

        transaction = snapshot_transaction(self.match_service.load_transaction(transaction_id))
        patterns = self.pattern_store.snapshot(self.org_id)
        return self._evaluate(transaction, patterns, options)

    def batch_match(self, transaction_ids: List[UUID], options: Optional[MatchOptions] = None) -> BatchMatchResult:
        """Match a bounded batch of transactions.

        Raises:
            ValidationError: If the batch is empty, too large or has bad options
        """
        options = options or MatchOptions()
        # Repeated ids are evaluated once, in first-seen order
        transaction_ids = list(dict.fromkeys(transaction_ids))
        if not transaction_ids:
            raise ValidationError("At least one transaction id is required")
        if len(transaction_ids) > self.config.max_batch_size:
            raise ValidationError(
                f"Batch of {len(transaction_ids)} exceeds the maximum of {self.config.max_batch_size}"
            )
        self._validate_options(options)

        start = time.perf_counter()
        deadline = start + options.time_budget_ms / 1000.0 if options.time_budget_ms else None

        transactions = self._load_transactions(transaction_ids)
        patterns = self.pattern_store.snapshot(self.org_id)

        parallel = self.config.batch_workers > 1 and len(transaction_ids) > 1 and not self._writes(options)

        def evaluate(transaction_id: UUID) -> BatchEntry:
            return self._evaluate_entry(
                transaction_id, transactions.get(transaction_id), patterns, options, deadline,
                owns_session=not parallel,
            )

        if parallel:
            entries = self._evaluate_parallel(evaluate, transaction_ids)
        else:
            entries = [evaluate(transaction_id) for transaction_id in transaction_ids]

        elapsed = time.perf_counter() - start
        batch_duration_seconds.observe(elapsed)
        result = aggregate_batch(entries, elapsed * 1000)

        logger.info(
            f"Batch match completed: {result.total} transactions, {result.auto_matched} auto-matched",
            extra={"org_id": str(self.org_id), "duration_ms": result.processing_time_ms}
        )
        return result

    def auto_match_unmatched(
        self,
        account_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        actor_id: Optional[UUID] = None,
    ) -> BatchMatchResult:
        """Auto-match the tenant's unmatched transactions, newest first.

        Returns:
            BatchMatchResult with applied and conflicts counts; an empty
            result when nothing is unmatched
        """
        limit = max(1, min(limit, self.config.max_batch_size))

        query = self.db.query(BankTransaction.id).filter(
            BankTransaction.org_id == self.org_id,
            BankTransaction.matched.is_(False),
        )
        if account_id:
            query = query.filter(BankTransaction.account_id == account_id)
        if date_from:
            query = query.filter(BankTransaction.date >= date_from)
        if date_to:
            query = query.filter(BankTransaction.date <= date_to)

        transaction_ids = [
            row.id for row in query.order_by(BankTransaction.date.desc(), BankTransaction.id).limit(limit).all()
        ]
        if not transaction_ids:
            return aggregate_batch([], 0.0)

        return self.batch_match(transaction_ids, MatchOptions(apply_auto_match=True, actor_id=actor_id))

    # Internals

    def _evaluate(
        self,
        transaction: TransactionSnapshot,
        patterns: Mapping[str, PatternSnapshot],
        options: MatchOptions,
    ) -> FindMatchesResult:
        start = time.perf_counter()

        candidates = self.candidate_source.candidates(transaction, self._scope(options))
        results = self.scorer.score_all(transaction, candidates, patterns)
        decision = self.policy.decide(transaction, results)

        outcome = FindMatchesResult(
            transaction=transaction,
            candidates=decision.ranked,
            decision=decision,
            candidates_evaluated=len(candidates),
            processing_time_ms=0.0,
        )

        if decision.auto_apply and options.apply_auto_match:
            match = self.match_service.apply_auto_match(transaction, decision.best_match, options.actor_id)
            outcome.auto_match_applied = True
            outcome.applied_match_id = match.id
            outcome.transaction = replace(transaction, matched=True)
        elif decision.outcome == OUTCOME_SUGGEST and options.save_suggestions:
            self.match_service.save_suggestion(transaction, decision.best_match)

        outcome.processing_time_ms = round((time.perf_counter() - start) * 1000, 3)

        match_evaluations_total.labels(outcome=decision.outcome).inc()
        match_candidates_per_transaction.observe(len(candidates))
        if decision.best_match is not None:
            match_score_histogram.observe(decision.best_match.score)

        logger.debug(
            f"Transaction evaluated: {decision.outcome}",
            extra={
                "org_id": str(self.org_id),
                "transaction_id": str(transaction.id),
                "outcome": decision.outcome,
                "score": decision.best_match.score if decision.best_match else None,
            }
        )
        return outcome

    def _evaluate_entry(
        self,
        transaction_id: UUID,
        transaction: Optional[TransactionSnapshot],
        patterns: Mapping[str, PatternSnapshot],
        options: MatchOptions,
        deadline: Optional[float],
        owns_session: bool = True,
    ) -> BatchEntry:
        """Evaluate one batch item; failures become failed entries.

        owns_session is False on pool threads, which must not touch the
        request session.
        """
        if deadline is not None and time.perf_counter() >= deadline:
            match_evaluations_total.labels(outcome=STATUS_SKIPPED).inc()
            return BatchEntry(transaction_id=transaction_id, status=STATUS_SKIPPED, error="Time budget exhausted")

        try:
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            result = self._evaluate(transaction, patterns, options)
        except ConflictError as e:
            return BatchEntry(transaction_id=transaction_id, status=STATUS_FAILED, error=f"conflict: {e}")
        except SQLAlchemyError as e:
            if owns_session:
                # Leave the session usable for the rest of the batch
                self.db.rollback()
            match_evaluations_total.labels(outcome=STATUS_FAILED).inc()
            logger.error(
                f"Transaction evaluation failed: {e}",
                exc_info=True,
                extra={"org_id": str(self.org_id), "transaction_id": str(transaction_id)}
            )
            return BatchEntry(transaction_id=transaction_id, status=STATUS_FAILED, error=str(e))
        except Exception as e:
            match_evaluations_total.labels(outcome=STATUS_FAILED).inc()
            logger.warning(
                f"Transaction evaluation failed: {e}",
                exc_info=not isinstance(e, NotFoundError),
                extra={"org_id": str(self.org_id), "transaction_id": str(transaction_id)}
            )
            return BatchEntry(transaction_id=transaction_id, status=STATUS_FAILED, error=str(e))

        return BatchEntry(transaction_id=transaction_id, status=result.decision.outcome, result=result)

    def _evaluate_parallel(self, evaluate, transaction_ids: List[UUID]) -> List[BatchEntry]:
        # Each task runs in a copy of the caller's context (request id)
        with ThreadPoolExecutor(max_workers=self.config.batch_workers) as executor:
            futures = [
                executor.submit(contextvars.copy_context().run, evaluate, transaction_id)
                for transaction_id in transaction_ids
            ]
            return [future.result() for future in futures]

    def _load_transactions(self, transaction_ids: List[UUID]) -> Dict[UUID, TransactionSnapshot]:
        rows = self.db.query(BankTransaction).filter(
            BankTransaction.org_id == self.org_id,
            BankTransaction.id.in_(set(transaction_ids)),
        ).all()
        return {row.id: snapshot_transaction(row) for row in rows}

    def _scope(self, options: MatchOptions) -> CandidateScope:
        return CandidateScope(
            org_id=self.org_id,
            record_types=tuple(options.record_types) if options.record_types else None,
            date_window_days=options.date_window_days or self.config.candidate_date_window_days,
            amount_window_pct=self.config.candidate_amount_window_pct,
            limit=options.limit or self.config.candidate_limit,
        )

    def _validate_options(self, options: MatchOptions) -> None:
        if options.limit is not None and not 1 <= options.limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        if options.date_window_days is not None and not 1 <= options.date_window_days <= 365:
            raise ValidationError("date_window_days must be between 1 and 365")
        if options.time_budget_ms is not None and options.time_budget_ms < 1:
            raise ValidationError("time_budget_ms must be positive")

    @staticmethod
    def _default_candidate_source(db: Session, config: MatchingConfig) -> SqlCandidateSource:
        if config.batch_workers > 1:
            # Parallel workers open their own short-lived sessions
            return SqlCandidateSource(session_factory=sessionmaker(bind=db.get_bind()))
        return SqlCandidateSource(db=db)

    def _writes(self, options: MatchOptions) -> bool:
        # Writes share the engine session, so they stay on the calling thread
        return options.apply_auto_match or options.save_suggestions


def aggregate_batch(entries: List[BatchEntry], processing_time_ms: float) -> BatchMatchResult:
    """Fold per-transaction entries into batch totals and statistics."""
    counts = {OUTCOME_AUTO_MATCH: 0, OUTCOME_SUGGEST: 0, OUTCOME_UNMATCHED: 0, STATUS_FAILED: 0, STATUS_SKIPPED: 0}
    candidates_evaluated = 0
    applied = 0
    conflicts = 0
    best_scores: List[int] = []
    distribution = {"high": 0, "medium": 0, "low": 0}

    for entry in entries:
        counts[entry.status] += 1
        if entry.error and entry.error.startswith("conflict:"):
            conflicts += 1
        if entry.result is None:
            continue
        candidates_evaluated += entry.result.candidates_evaluated
        if entry.result.auto_match_applied:
            applied += 1
        best = entry.result.best_match
        if best is not None:
            best_scores.append(best.score)
            distribution[best.confidence] += 1

    total = len(entries)
    matched = counts[OUTCOME_AUTO_MATCH] + counts[OUTCOME_SUGGEST]
    statistics: Dict[str, Any] = {
        "auto_match_rate": round(counts[OUTCOME_AUTO_MATCH] / total, 4) if total else 0.0,
        "match_rate": round(matched / total, 4) if total else 0.0,
        "avg_score": round(sum(best_scores) / len(best_scores), 2) if best_scores else 0.0,
        "score_distribution": distribution,
    }

    return BatchMatchResult(
        total=total,
        candidates_evaluated=candidates_evaluated,
        auto_matched=counts[OUTCOME_AUTO_MATCH],
        suggested=counts[OUTCOME_SUGGEST],
        unmatched=counts[OUTCOME_UNMATCHED],
        failed=counts[STATUS_FAILED],
        skipped=counts[STATUS_SKIPPED],
        matches=entries,
        statistics=statistics,
        processing_time_ms=round(processing_time_ms, 3),
        applied=applied,
        conflicts=conflicts,
    )
