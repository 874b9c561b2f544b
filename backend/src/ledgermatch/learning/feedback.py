"""Learning feedback: confirmations and rejections -> pattern strength.

Each (transaction, record, event type) is applied at most once; the
MatchFeedbackEvent row is the idempotency ledger. Strength grows with
diminishing returns (strength += increment / (1 + strength)) and drops by
a fixed penalty on rejection. A pattern at or below zero is deactivated.
"""

import logging
from typing import Optional, List
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..matching.normalize import counterparty_key, pattern_fingerprint
from ..matching.ports import TransactionSnapshot, LearningUpdateError
from ..matching.schemas import MatchingConfig
from ..models.base import utcnow
from ..models.feedback_event import MatchFeedbackEvent
from ..models.matching_pattern import MatchingPattern
from ..observability.metrics import learning_updates_total
from .pattern_store import PatternStore

logger = logging.getLogger(__name__)

EVENT_MATCH_CONFIRMED = "MATCH_CONFIRMED"
EVENT_MATCH_REJECTED = "MATCH_REJECTED"


class LearningFeedback:
    """Apply user feedback to the tenant's pattern store.

    Writes are committed as their own unit of work, after the match state
    change they describe has been committed. Storage failures surface as
    LearningUpdateError for the caller to log and drop.
    """

    def __init__(self, db: Session, config: MatchingConfig):
        """Initialize learning feedback.

        Args:
            db: Database session
            config: Matching configuration (baseline, increment, penalty)
        """
        self.db = db
        self.config = config
        self.store = PatternStore(db)

    def on_confirmation(
        self,
        transaction: TransactionSnapshot,
        record_id: UUID,
        record_type: str,
        score: Optional[int] = None,
        reasons: Optional[List[str]] = None,
        actor_id: Optional[UUID] = None,
    ) -> float:
        """Strengthen (or create) the pattern for a confirmed match.

        Args:
            transaction: Confirmed transaction
            record_id: Confirmed record
            record_type: Confirmed record type
            score: Score at confirmation time
            reasons: Reason codes at confirmation time
            actor_id: Confirming user (None for auto-match)

        Returns:
            Strength delta applied (0.0 for duplicates or no fingerprint)

        Raises:
            LearningUpdateError: If the pattern store update fails
        """
        fingerprint, key = self._fingerprint(transaction, record_type)
        if not fingerprint:
            logger.debug(
                "No counterparty signal, skipping pattern update",
                extra={"org_id": str(transaction.org_id), "transaction_id": str(transaction.id)}
            )
            return 0.0

        try:
            if self._already_applied(transaction, record_id, EVENT_MATCH_CONFIRMED):
                return 0.0

            pattern = self.store.get(transaction.org_id, fingerprint)
            now = utcnow()
            baseline = self.config.pattern_baseline_strength

            if pattern is None:
                pattern = MatchingPattern(
                    org_id=transaction.org_id,
                    fingerprint=fingerprint,
                    counterparty_key=key,
                    record_type=record_type,
                    strength=baseline,
                    confirmations=1,
                    rejections=0,
                    is_active=True,
                    last_seen_at=now,
                )
                self.db.add(pattern)
                delta = baseline
            elif not pattern.is_active:
                delta = baseline - pattern.strength
                pattern.strength = baseline
                pattern.is_active = True
                pattern.confirmations += 1
                pattern.last_seen_at = now
            else:
                delta = self.config.pattern_increment / (1.0 + pattern.strength)
                pattern.strength += delta
                pattern.confirmations += 1
                pattern.last_seen_at = now

            self.db.add(MatchFeedbackEvent(
                org_id=transaction.org_id,
                bank_transaction_id=transaction.id,
                record_id=record_id,
                record_type=record_type,
                event_type=EVENT_MATCH_CONFIRMED,
                fingerprint=fingerprint,
                strength_delta=delta,
                meta_json={
                    "score": score,
                    "reasons": list(reasons or []),
                    "actor_id": str(actor_id) if actor_id else None,
                },
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            raise LearningUpdateError(f"Pattern update failed for {fingerprint}: {e}") from e

        learning_updates_total.labels(event_type=EVENT_MATCH_CONFIRMED).inc()
        logger.info(
            f"Pattern strengthened: {fingerprint}",
            extra={
                "org_id": str(transaction.org_id),
                "transaction_id": str(transaction.id),
                "record_id": str(record_id),
            }
        )
        return delta

    def on_rejection(
        self,
        transaction: TransactionSnapshot,
        record_id: UUID,
        record_type: str,
        reason: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> float:
        """Weaken the pattern for a rejected match.

        Returns:
            Strength delta applied (negative, or 0.0 when nothing changed)

        Raises:
            LearningUpdateError: If the pattern store update fails
        """
        fingerprint, _ = self._fingerprint(transaction, record_type)
        if not fingerprint:
            return 0.0

        try:
            if self._already_applied(transaction, record_id, EVENT_MATCH_REJECTED):
                return 0.0

            pattern = self.store.get(transaction.org_id, fingerprint)
            delta = 0.0
            if pattern is not None:
                pattern.rejections += 1
                if pattern.is_active:
                    new_strength = pattern.strength - self.config.pattern_rejection_penalty
                    if new_strength <= 0:
                        new_strength = 0.0
                        pattern.is_active = False
                    delta = new_strength - pattern.strength
                    pattern.strength = new_strength

            self.db.add(MatchFeedbackEvent(
                org_id=transaction.org_id,
                bank_transaction_id=transaction.id,
                record_id=record_id,
                record_type=record_type,
                event_type=EVENT_MATCH_REJECTED,
                fingerprint=fingerprint,
                strength_delta=delta,
                meta_json={
                    "reason": reason,
                    "actor_id": str(actor_id) if actor_id else None,
                },
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            raise LearningUpdateError(f"Pattern update failed for {fingerprint}: {e}") from e

        learning_updates_total.labels(event_type=EVENT_MATCH_REJECTED).inc()
        logger.info(
            f"Pattern weakened: {fingerprint}",
            extra={
                "org_id": str(transaction.org_id),
                "transaction_id": str(transaction.id),
                "record_id": str(record_id),
            }
        )
        return delta

    def _fingerprint(self, transaction: TransactionSnapshot, record_type: str):
        key = counterparty_key(transaction.counterparty_account, transaction.counterparty_name)
        if not key:
            return "", ""
        return pattern_fingerprint(key, record_type), key

    def _already_applied(self, transaction: TransactionSnapshot, record_id: UUID, event_type: str) -> bool:
        return self.db.query(MatchFeedbackEvent.id).filter(
            MatchFeedbackEvent.org_id == transaction.org_id,
            MatchFeedbackEvent.bank_transaction_id == transaction.id,
            MatchFeedbackEvent.record_id == record_id,
            MatchFeedbackEvent.event_type == event_type,
        ).first() is not None
