"""Matching pattern SQLAlchemy model (learning loop)."""

import uuid

from sqlalchemy import Column, Text, ForeignKey, Integer, Float, Boolean, DateTime, Uuid, Index

from .base import Base, utcnow


class MatchingPattern(Base):
    """Learned counterparty -> record type association of one tenant.

    The fingerprint is "<counterparty key>|<record type>". Strength grows
    with diminishing returns on confirmations and drops on rejections; a
    pattern at zero strength is deactivated but kept until retention
    cleanup deletes it.
    """
    __tablename__ = "matching_pattern"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("org.id", ondelete="RESTRICT"), nullable=False)

    fingerprint = Column(Text, nullable=False)
    counterparty_key = Column(Text, nullable=False)
    record_type = Column(Text, nullable=False)

    # Learning metrics
    strength = Column(Float, nullable=False, default=0.0)
    confirmations = Column(Integer, nullable=False, default=0)
    rejections = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def success_rate(self) -> float:
        total = self.confirmations + self.rejections
        return self.confirmations / total if total else 0.0

    def to_dict(self):
        """Convert pattern to dictionary representation."""
        return {
            "id": str(self.id),
            "fingerprint": self.fingerprint,
            "counterparty_key": self.counterparty_key,
            "record_type": self.record_type,
            "strength": round(self.strength, 4),
            "confirmations": self.confirmations,
            "rejections": self.rejections,
            "success_rate": round(self.success_rate, 4),
            "is_active": self.is_active,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


Index("uq_matching_pattern_org_fingerprint", MatchingPattern.org_id, MatchingPattern.fingerprint, unique=True)
Index("idx_matching_pattern_org_active_strength", MatchingPattern.org_id, MatchingPattern.is_active, MatchingPattern.strength.desc())
