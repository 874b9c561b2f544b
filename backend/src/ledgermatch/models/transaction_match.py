"""Transaction match SQLAlchemy model."""

import uuid

from sqlalchemy import Column, Text, ForeignKey, Integer, DateTime, Uuid, Index

from .base import Base, PortableJSONB, utcnow


ACTIVE_MATCH_STATUSES = ("confirmed", "auto_confirmed")


class TransactionMatch(Base):
    """Durable association between a bank transaction and a ledger record.

    Exactly one row per bank transaction (unique bank_transaction_id). The
    row is upserted on every state change, so a transaction can never have
    two confirmed rows.

    Status values:
    - suggested: best candidate surfaced for review
    - confirmed: user-confirmed match
    - auto_confirmed: applied by the engine without review
    - rejected: user rejected the suggestion or match
    - unmatched: a previous match was undone

    Method values: ai_suggested, manual
    """
    __tablename__ = "transaction_match"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("org.id", ondelete="RESTRICT"), nullable=False)
    bank_transaction_id = Column(
        Uuid, ForeignKey("bank_transaction.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    record_id = Column(Uuid, nullable=False)
    record_type = Column(Text, nullable=False)

    # Scoring snapshot
    score = Column(Integer, nullable=False, default=0)  # 0-100
    confidence = Column(Text, nullable=False)  # high, medium, low
    reasons = Column(PortableJSONB, nullable=False, default=list)

    method = Column(Text, nullable=False)  # ai_suggested, manual
    status = Column(Text, nullable=False)

    # Audit fields
    matched_by = Column(Uuid, nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(Uuid, nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    unmatched_by = Column(Uuid, nullable=True)
    unmatched_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_MATCH_STATUSES

    def to_dict(self):
        """Convert match to dictionary representation."""
        return {
            "id": str(self.id),
            "bank_transaction_id": str(self.bank_transaction_id),
            "record_id": str(self.record_id),
            "record_type": self.record_type,
            "score": self.score,
            "confidence": self.confidence,
            "reasons": self.reasons,
            "method": self.method,
            "status": self.status,
            "matched_by": str(self.matched_by) if self.matched_by else None,
            "matched_at": self.matched_at.isoformat() if self.matched_at else None,
            "rejection_reason": self.rejection_reason,
        }


Index("idx_transaction_match_org_status_score", TransactionMatch.org_id, TransactionMatch.status, TransactionMatch.score.desc())
