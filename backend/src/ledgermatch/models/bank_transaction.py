"""Bank transaction SQLAlchemy model."""

import uuid

from sqlalchemy import Column, Text, ForeignKey, Numeric, Date, DateTime, Boolean, Uuid, Index

from .base import Base, utcnow


class BankTransaction(Base):
    """An imported bank feed line awaiting reconciliation.

    Rows are created by the bank feed import. The reconciliation core only
    writes the matched/matched_record_* columns, and only through the match
    service so that the flag and the transaction_match row move together.

    Amount sign convention: positive = credit (money in), negative = debit.
    """
    __tablename__ = "bank_transaction"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("org.id", ondelete="RESTRICT"), nullable=False)
    account_id = Column(Uuid, nullable=True)

    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(Text, nullable=False, default="SAR")
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)
    reference = Column(Text, nullable=True)
    counterparty_name = Column(Text, nullable=True)
    counterparty_account = Column(Text, nullable=True)

    # Reconciliation state
    matched = Column(Boolean, nullable=False, default=False)
    matched_record_id = Column(Uuid, nullable=True)
    matched_record_type = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def direction(self) -> str:
        return "credit" if self.amount >= 0 else "debit"

    def to_dict(self):
        """Convert bank transaction to dictionary representation."""
        return {
            "id": str(self.id),
            "org_id": str(self.org_id),
            "account_id": str(self.account_id) if self.account_id else None,
            "amount": str(self.amount),
            "currency": self.currency,
            "date": self.date.isoformat(),
            "description": self.description,
            "reference": self.reference,
            "counterparty_name": self.counterparty_name,
            "matched": self.matched,
            "matched_record_id": str(self.matched_record_id) if self.matched_record_id else None,
            "matched_record_type": self.matched_record_type,
        }


Index("idx_bank_transaction_org_matched_date", BankTransaction.org_id, BankTransaction.matched, BankTransaction.date)
