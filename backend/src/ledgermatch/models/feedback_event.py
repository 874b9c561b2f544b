"""Match feedback event SQLAlchemy model"""

import uuid

from sqlalchemy import Column, Text, ForeignKey, Float, DateTime, Uuid, Index

from .base import Base, PortableJSONB, utcnow


class MatchFeedbackEvent(Base):
    """MatchFeedbackEvent records each confirmation or rejection fed to learning.

    One row per (transaction, record, event type). The unique index makes
    the learning loop idempotent: replaying a confirmation for the same
    pair finds the existing row and leaves pattern strength untouched.

    Event types: MATCH_CONFIRMED, MATCH_REJECTED
    """
    __tablename__ = "match_feedback_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("org.id", ondelete="RESTRICT"), nullable=False)

    bank_transaction_id = Column(Uuid, nullable=False)
    record_id = Column(Uuid, nullable=False)
    record_type = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)

    fingerprint = Column(Text, nullable=False)
    strength_delta = Column(Float, nullable=False, default=0.0)

    # score, reasons, rejection reason
    meta_json = Column(PortableJSONB, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        """Convert feedback event to dictionary representation"""
        return {
            "id": str(self.id),
            "bank_transaction_id": str(self.bank_transaction_id),
            "record_id": str(self.record_id),
            "record_type": self.record_type,
            "event_type": self.event_type,
            "fingerprint": self.fingerprint,
            "strength_delta": self.strength_delta,
            "meta_json": self.meta_json,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


Index(
    "uq_match_feedback_event_pair",
    MatchFeedbackEvent.org_id,
    MatchFeedbackEvent.bank_transaction_id,
    MatchFeedbackEvent.record_id,
    MatchFeedbackEvent.event_type,
    unique=True,
)
Index("idx_match_feedback_event_org_created", MatchFeedbackEvent.org_id, MatchFeedbackEvent.created_at.desc())
