"""Match service: the only write path for transaction matched state.

Every state change of one transaction (match row + bank_transaction
matched fields) is committed or rolled back as one unit. The learning
update runs afterwards as a separate unit of work; its failure is logged
and counted, never propagated.

At most one active (confirmed / auto_confirmed) match per transaction is
enforced by the unique bank_transaction_id column and an upsert whose
update only fires when the existing row is not active.
"""

import logging
import uuid
from typing import Optional, Dict, Any, List, Tuple
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..learning.feedback import LearningFeedback, EVENT_MATCH_CONFIRMED, EVENT_MATCH_REJECTED
from ..learning.pattern_store import PatternStore, empty_statistics
from ..models.base import utcnow
from ..models.bank_transaction import BankTransaction
from ..models.ledger_record import LedgerRecord
from ..models.org import Org
from ..models.transaction_match import TransactionMatch, ACTIVE_MATCH_STATUSES
from ..observability.metrics import matches_applied_total, match_conflicts_total, learning_failures_total
from .candidate_source import snapshot_transaction
from .ports import (
    TransactionSnapshot,
    MatchResult,
    MatcherError,
    NotFoundError,
    ValidationError,
    ConflictError,
    LearningUpdateError,
)
from .schemas import MatchingConfig

logger = logging.getLogger(__name__)

STATUS_SUGGESTED = "suggested"
STATUS_CONFIRMED = "confirmed"
STATUS_AUTO_CONFIRMED = "auto_confirmed"
STATUS_REJECTED = "rejected"
STATUS_UNMATCHED = "unmatched"

METHOD_AI_SUGGESTED = "ai_suggested"
METHOD_MANUAL = "manual"

# A user-confirmed match without a computed score counts as certain
MANUAL_CONFIRM_SCORE = 100

MAX_BULK_CONFIRM = 50
MAX_PAGE_SIZE = 100

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def get_matching_config(db: Session, org_id: UUID) -> MatchingConfig:
    """Matching configuration of a tenant: process defaults + org overrides.

    Invalid tenant overrides are logged and ignored so that a bad setting
    cannot take reconciliation down for the tenant.

    Raises:
        NotFoundError: If the organization does not exist
    """
    org = db.query(Org).filter(Org.id == org_id).first()
    if not org:
        raise NotFoundError(f"Organization {org_id} not found")

    settings = get_settings()
    defaults = {
        "max_batch_size": settings.MATCH_MAX_BATCH_SIZE,
        "batch_workers": settings.MATCH_BATCH_WORKERS,
    }
    try:
        return MatchingConfig.with_overrides(org.matching_overrides(), **defaults)
    except PydanticValidationError as e:
        logger.error(
            f"Invalid matching overrides for org {org_id}, using defaults: {e}",
            extra={"org_id": str(org_id)}
        )
        return MatchingConfig(**defaults)


class MatchService:
    """Tenant-scoped match state changes and learning hand-off."""

    def __init__(
        self,
        db: Session,
        org_id: UUID,
        config: MatchingConfig,
        feedback: Optional[LearningFeedback] = None,
    ):
        """Initialize match service.

        Args:
            db: Database session
            org_id: Organization UUID (tenant scope for every query)
            config: Matching configuration
            feedback: Learning feedback (defaults to one on the same session)
        """
        self.db = db
        self.org_id = org_id
        self.config = config
        self.feedback = feedback or LearningFeedback(db, config)

    # Lookups

    def load_transaction(self, transaction_id: UUID) -> BankTransaction:
        """Bank transaction of the tenant.

        Raises:
            NotFoundError: If missing or owned by another tenant
        """
        transaction = self.db.query(BankTransaction).filter(
            BankTransaction.id == transaction_id,
            BankTransaction.org_id == self.org_id,
        ).first()
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def load_record(self, record_id: UUID, record_type: Optional[str] = None) -> LedgerRecord:
        """Ledger record of the tenant.

        Raises:
            NotFoundError: If missing, of another type, or owned by another tenant
        """
        query = self.db.query(LedgerRecord).filter(
            LedgerRecord.id == record_id,
            LedgerRecord.org_id == self.org_id,
        )
        if record_type:
            query = query.filter(LedgerRecord.record_type == record_type)
        record = query.first()
        if not record:
            raise NotFoundError(f"Record {record_id} not found")
        return record

    def get_match(self, transaction_id: UUID) -> Optional[TransactionMatch]:
        """Current match row of a transaction (fresh from the database)."""
        return self.db.query(TransactionMatch).filter(
            TransactionMatch.org_id == self.org_id,
            TransactionMatch.bank_transaction_id == transaction_id,
        ).populate_existing().first()

    # State changes

    def apply_auto_match(
        self,
        transaction: TransactionSnapshot,
        result: MatchResult,
        actor_id: Optional[UUID] = None,
    ) -> TransactionMatch:
        """Apply a decided auto-match atomically, then learn from it.

        Raises:
            NotFoundError: If the transaction is not in the tenant
            ConflictError: If another record is already actively matched
        """
        candidate = result.candidate
        match = self._activate(
            transaction_id=transaction.id,
            record_id=candidate.id,
            record_type=candidate.record_type,
            score=result.score,
            confidence=result.confidence,
            reasons=result.reason_codes,
            method=METHOD_AI_SUGGESTED,
            status=STATUS_AUTO_CONFIRMED,
            actor_id=actor_id,
        )
        self._learn_confirmation(transaction, candidate.id, candidate.record_type, result.score, result.reason_codes, actor_id)
        return match

    def confirm_match(
        self,
        transaction_id: UUID,
        record_id: UUID,
        record_type: str,
        score: Optional[int] = None,
        actor_id: Optional[UUID] = None,
    ) -> TransactionMatch:
        """Confirm a transaction -> record match (user action).

        Confirming the persisted suggestion keeps its score, reasons and
        ai_suggested method; any other record is a manual match scored
        MANUAL_CONFIRM_SCORE unless the caller passes a score.

        Raises:
            NotFoundError: If the transaction or record is not in the tenant
            ConflictError: If another record is already actively matched
        """
        transaction = self.load_transaction(transaction_id)
        self.load_record(record_id, record_type)

        existing = self.get_match(transaction_id)
        reasons: List[str] = []
        method = METHOD_MANUAL
        if existing is not None and existing.record_id == record_id and not existing.is_active:
            reasons = list(existing.reasons or [])
            if existing.status == STATUS_SUGGESTED:
                method = existing.method
            if score is None:
                score = existing.score
        score = score if score is not None else MANUAL_CONFIRM_SCORE

        snapshot = snapshot_transaction(transaction)
        match = self._activate(
            transaction_id=transaction_id,
            record_id=record_id,
            record_type=record_type,
            score=score,
            confidence=self.config.tier_for(score),
            reasons=reasons,
            method=method,
            status=STATUS_CONFIRMED,
            actor_id=actor_id,
        )
        self._learn_confirmation(snapshot, record_id, record_type, score, reasons, actor_id)
        return match

    def reject_match(
        self,
        transaction_id: UUID,
        record_id: Optional[UUID] = None,
        record_type: Optional[str] = None,
        reason: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> Optional[TransactionMatch]:
        """Reject the persisted match/suggestion, or an unpersisted candidate.

        When the transaction's match row points at the rejected record (or no
        record is given) the row becomes rejected and an active match is
        undone. Rejecting any other candidate only feeds learning.

        Returns:
            Updated match row, or None when no row changed

        Raises:
            NotFoundError: If the transaction, match or record is not in the tenant
            ValidationError: If there is no match row and no record is given
        """
        transaction = self.load_transaction(transaction_id)
        existing = self.get_match(transaction_id)

        if existing is not None and (record_id is None or existing.record_id == record_id):
            record_id = existing.record_id
            record_type = existing.record_type
            was_active = existing.is_active
            try:
                existing.status = STATUS_REJECTED
                existing.rejected_by = actor_id
                existing.rejected_at = utcnow()
                existing.rejection_reason = reason
                if was_active:
                    self._clear_transaction(transaction)
                self.db.commit()
            except SQLAlchemyError:
                self.db.rollback()
                raise
            matches_applied_total.labels(action=STATUS_REJECTED).inc()
            logger.info(
                "Match rejected",
                extra={
                    "org_id": str(self.org_id),
                    "transaction_id": str(transaction_id),
                    "record_id": str(record_id),
                }
            )
            match = existing
        else:
            if record_id is None:
                if existing is None:
                    raise NotFoundError(f"No match found for transaction {transaction_id}")
                raise ValidationError("record_id is required to reject a candidate")
            record_type = self.load_record(record_id, record_type).record_type
            match = None

        self._learn_rejection(snapshot_transaction(transaction), record_id, record_type, reason, actor_id)
        return match

    def unmatch(self, transaction_id: UUID, actor_id: Optional[UUID] = None) -> TransactionMatch:
        """Undo an active match so the transaction can be matched again.

        Raises:
            NotFoundError: If the transaction is not in the tenant
            ValidationError: If the transaction has no active match
        """
        transaction = self.load_transaction(transaction_id)
        existing = self.get_match(transaction_id)
        if existing is None or not existing.is_active:
            raise ValidationError(f"Transaction {transaction_id} has no active match")

        try:
            existing.status = STATUS_UNMATCHED
            existing.unmatched_by = actor_id
            existing.unmatched_at = utcnow()
            self._clear_transaction(transaction)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        matches_applied_total.labels(action=STATUS_UNMATCHED).inc()
        logger.info(
            "Transaction unmatched",
            extra={"org_id": str(self.org_id), "transaction_id": str(transaction_id)}
        )
        return existing

    def save_suggestion(self, transaction: TransactionSnapshot, result: MatchResult) -> Optional[TransactionMatch]:
        """Persist the best suggestion for review.

        Skipped when the transaction is actively matched or the same record
        was already rejected for it.
        """
        candidate = result.candidate
        existing = self.get_match(transaction.id)
        if existing is not None:
            if existing.is_active:
                return None
            if existing.status == STATUS_REJECTED and existing.record_id == candidate.id:
                return None

        try:
            self._upsert(
                transaction_id=transaction.id,
                record_id=candidate.id,
                record_type=candidate.record_type,
                score=result.score,
                confidence=result.confidence,
                reasons=result.reason_codes,
                method=METHOD_AI_SUGGESTED,
                status=STATUS_SUGGESTED,
                actor_id=None,
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        matches_applied_total.labels(action=STATUS_SUGGESTED).inc()
        match = self.get_match(transaction.id)
        if match is None or match.is_active:
            return None
        return match

    def bulk_confirm_suggestions(self, match_ids: List[UUID], actor_id: Optional[UUID] = None) -> Dict[str, int]:
        """Confirm pending suggestions one by one.

        Each confirmation commits independently; a conflict on one does not
        undo the others.

        Returns:
            Dict with confirmed, conflicts, missing counts

        Raises:
            ValidationError: If more than 50 ids are given
        """
        if len(match_ids) > MAX_BULK_CONFIRM:
            raise ValidationError(f"At most {MAX_BULK_CONFIRM} suggestions can be confirmed at once")

        counts = {"confirmed": 0, "conflicts": 0, "missing": 0}
        for match_id in match_ids:
            suggestion = self.db.query(TransactionMatch).filter(
                TransactionMatch.id == match_id,
                TransactionMatch.org_id == self.org_id,
                TransactionMatch.status == STATUS_SUGGESTED,
            ).first()
            if suggestion is None:
                counts["missing"] += 1
                continue
            try:
                self.confirm_match(
                    suggestion.bank_transaction_id,
                    suggestion.record_id,
                    suggestion.record_type,
                    suggestion.score,
                    actor_id,
                )
                counts["confirmed"] += 1
            except ConflictError:
                counts["conflicts"] += 1
            except NotFoundError:
                counts["missing"] += 1
        return counts

    def pending_suggestions(
        self, min_score: int = 0, page: int = 1, page_size: int = 20
    ) -> Tuple[List[TransactionMatch], int]:
        """Suggested matches awaiting review, best score first."""
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))

        query = self.db.query(TransactionMatch).filter(
            TransactionMatch.org_id == self.org_id,
            TransactionMatch.status == STATUS_SUGGESTED,
            TransactionMatch.score >= min_score,
        )
        total = query.count()
        items = query.order_by(
            TransactionMatch.score.desc(),
            TransactionMatch.created_at.desc(),
        ).offset((page - 1) * page_size).limit(page_size).all()
        return items, total

    # Fire-and-forget learning entry points

    def record_confirmation(self, context: Dict[str, Any]) -> bool:
        """Feed a confirmation to learning without touching match state.

        Never raises. Context keys: transaction_id, record_id, record_type,
        score, reasons, actor_id.

        Returns:
            True if the learning update was applied or was a duplicate
        """
        try:
            transaction = self.load_transaction(context["transaction_id"])
            self.feedback.on_confirmation(
                snapshot_transaction(transaction),
                context["record_id"],
                context["record_type"],
                score=context.get("score"),
                reasons=context.get("reasons"),
                actor_id=context.get("actor_id"),
            )
            return True
        except Exception as e:
            self._learning_failed(EVENT_MATCH_CONFIRMED, context.get("transaction_id"), e)
            return False

    def record_rejection(self, context: Dict[str, Any]) -> bool:
        """Feed a rejection to learning without touching match state. Never raises."""
        try:
            transaction = self.load_transaction(context["transaction_id"])
            self.feedback.on_rejection(
                snapshot_transaction(transaction),
                context["record_id"],
                context["record_type"],
                reason=context.get("reason"),
                actor_id=context.get("actor_id"),
            )
            return True
        except Exception as e:
            self._learning_failed(EVENT_MATCH_REJECTED, context.get("transaction_id"), e)
            return False

    # Reporting

    def matching_stats(self) -> Dict[str, Any]:
        """Reconciliation statistics of the tenant (fails closed)."""
        try:
            total_transactions = self.db.query(func.count(BankTransaction.id)).filter(
                BankTransaction.org_id == self.org_id,
            ).scalar() or 0
            matched_transactions = self.db.query(func.count(BankTransaction.id)).filter(
                BankTransaction.org_id == self.org_id,
                BankTransaction.matched.is_(True),
            ).scalar() or 0

            by_status = dict(self.db.query(TransactionMatch.status, func.count(TransactionMatch.id)).filter(
                TransactionMatch.org_id == self.org_id,
            ).group_by(TransactionMatch.status).all())
            by_method = dict(self.db.query(TransactionMatch.method, func.count(TransactionMatch.id)).filter(
                TransactionMatch.org_id == self.org_id,
                TransactionMatch.status.in_(ACTIVE_MATCH_STATUSES),
            ).group_by(TransactionMatch.method).all())
            avg_score = self.db.query(func.avg(TransactionMatch.score)).filter(
                TransactionMatch.org_id == self.org_id,
                TransactionMatch.status.in_(ACTIVE_MATCH_STATUSES),
            ).scalar()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Matching statistics failed for org {self.org_id}: {e}",
                exc_info=True,
                extra={"org_id": str(self.org_id)}
            )
            return self._empty_stats()

        confirmed = by_status.get(STATUS_CONFIRMED, 0)
        auto_confirmed = by_status.get(STATUS_AUTO_CONFIRMED, 0)
        rejected = by_status.get(STATUS_REJECTED, 0)
        reviewed = confirmed + auto_confirmed + rejected

        return {
            "total_transactions": total_transactions,
            "matched_transactions": matched_transactions,
            "unmatched_transactions": total_transactions - matched_transactions,
            "matches_by_status": by_status,
            "matches_by_method": by_method,
            "auto_match_rate": round(auto_confirmed / matched_transactions, 4) if matched_transactions else 0.0,
            "accuracy": round((confirmed + auto_confirmed) / reviewed, 4) if reviewed else 0.0,
            "avg_score": round(float(avg_score), 2) if avg_score is not None else 0.0,
            "patterns": PatternStore(self.db).statistics(self.org_id),
        }

    # Internals

    def _activate(
        self,
        transaction_id: UUID,
        record_id: UUID,
        record_type: str,
        score: int,
        confidence: str,
        reasons: List[str],
        method: str,
        status: str,
        actor_id: Optional[UUID],
    ) -> TransactionMatch:
        """Make record_id the active match of a transaction in one commit."""
        try:
            transaction = self.load_transaction(transaction_id)
            existing = self.get_match(transaction_id)
            if existing is not None and existing.is_active:
                if existing.record_id == record_id:
                    return existing
                raise ConflictError(f"Transaction {transaction_id} is already matched to another record")

            self._upsert(
                transaction_id=transaction_id,
                record_id=record_id,
                record_type=record_type,
                score=score,
                confidence=confidence,
                reasons=reasons,
                method=method,
                status=status,
                actor_id=actor_id,
            )

            match = self.get_match(transaction_id)
            if match is None or not match.is_active or match.record_id != record_id:
                raise ConflictError(f"Transaction {transaction_id} was matched concurrently")

            transaction.matched = True
            transaction.matched_record_id = record_id
            transaction.matched_record_type = record_type
            self.db.commit()
        except ConflictError:
            self.db.rollback()
            match_conflicts_total.inc()
            logger.warning(
                "Match conflict",
                extra={"org_id": str(self.org_id), "transaction_id": str(transaction_id), "record_id": str(record_id)}
            )
            raise
        except IntegrityError as e:
            self.db.rollback()
            match_conflicts_total.inc()
            raise ConflictError(f"Transaction {transaction_id} was matched concurrently") from e
        except SQLAlchemyError:
            self.db.rollback()
            raise

        matches_applied_total.labels(action=status).inc()
        logger.info(
            f"Match {status}",
            extra={
                "org_id": str(self.org_id),
                "transaction_id": str(transaction_id),
                "record_id": str(record_id),
                "score": score,
            }
        )
        return match

    def _upsert(
        self,
        transaction_id: UUID,
        record_id: UUID,
        record_type: str,
        score: int,
        confidence: str,
        reasons: List[str],
        method: str,
        status: str,
        actor_id: Optional[UUID],
    ) -> None:
        """INSERT ... ON CONFLICT (bank_transaction_id) DO UPDATE unless active."""
        dialect = self.db.get_bind().dialect.name
        insert = _INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise MatcherError(f"Unsupported database dialect for match upsert: {dialect}")

        now = utcnow()
        activating = status in ACTIVE_MATCH_STATUSES
        values = {
            "id": uuid.uuid4(),
            "org_id": self.org_id,
            "bank_transaction_id": transaction_id,
            "record_id": record_id,
            "record_type": record_type,
            "score": score,
            "confidence": confidence,
            "reasons": list(reasons),
            "method": method,
            "status": status,
            "matched_by": actor_id if activating else None,
            "matched_at": now if activating else None,
            "rejected_by": None,
            "rejected_at": None,
            "rejection_reason": None,
            "unmatched_by": None,
            "unmatched_at": None,
            "created_at": now,
            "updated_at": now,
        }
        stmt = insert(TransactionMatch).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[TransactionMatch.bank_transaction_id],
            set_={
                key: stmt.excluded[key]
                for key in values
                if key not in ("id", "org_id", "bank_transaction_id", "created_at")
            },
            where=TransactionMatch.status.notin_(ACTIVE_MATCH_STATUSES),
        )
        self.db.execute(stmt)

    def _clear_transaction(self, transaction: BankTransaction) -> None:
        transaction.matched = False
        transaction.matched_record_id = None
        transaction.matched_record_type = None

    def _learn_confirmation(
        self,
        transaction: TransactionSnapshot,
        record_id: UUID,
        record_type: str,
        score: Optional[int],
        reasons: List[str],
        actor_id: Optional[UUID],
    ) -> None:
        try:
            self.feedback.on_confirmation(
                transaction, record_id, record_type, score=score, reasons=reasons, actor_id=actor_id
            )
        except LearningUpdateError as e:
            self._learning_failed(EVENT_MATCH_CONFIRMED, transaction.id, e)

    def _learn_rejection(
        self,
        transaction: TransactionSnapshot,
        record_id: UUID,
        record_type: str,
        reason: Optional[str],
        actor_id: Optional[UUID],
    ) -> None:
        try:
            self.feedback.on_rejection(transaction, record_id, record_type, reason=reason, actor_id=actor_id)
        except LearningUpdateError as e:
            self._learning_failed(EVENT_MATCH_REJECTED, transaction.id, e)

    def _learning_failed(self, event_type: str, transaction_id: Any, error: Exception) -> None:
        self.db.rollback()
        learning_failures_total.labels(event_type=event_type).inc()
        logger.warning(
            f"Learning update skipped: {error}",
            extra={"org_id": str(self.org_id), "transaction_id": str(transaction_id)}
        )

    def _empty_stats(self) -> Dict[str, Any]:
        return {
            "total_transactions": 0,
            "matched_transactions": 0,
            "unmatched_transactions": 0,
            "matches_by_status": {},
            "matches_by_method": {},
            "auto_match_rate": 0.0,
            "accuracy": 0.0,
            "avg_score": 0.0,
            "patterns": empty_statistics(),
        }
