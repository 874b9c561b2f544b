"""Ledger record SQLAlchemy model (reconciliation candidates)."""

import uuid

from sqlalchemy import Column, Text, ForeignKey, Numeric, Date, DateTime, Uuid, Index

from .base import Base, utcnow


RECORD_TYPES = ("invoice", "payment", "bill", "expense", "expected_receipt")

# Statuses in which a record can still absorb a bank transaction
OPEN_STATUSES = {
    "invoice": ("sent", "partial", "overdue"),
    "payment": ("completed", "processing"),
    "bill": ("pending", "partial", "overdue"),
    "expense": ("approved", "pending_approval"),
    "expected_receipt": ("expected", "partial"),
}


class LedgerRecord(Base):
    """Business record a bank transaction may reconcile against.

    Read model over invoices, payments, bills, expenses and expected
    receipts owned by the billing modules. The matching engine never
    mutates these rows.

    Amount is always positive; the transaction sign decides which record
    types are plausible.
    """
    __tablename__ = "ledger_record"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("org.id", ondelete="RESTRICT"), nullable=False)

    record_type = Column(Text, nullable=False)  # invoice, payment, bill, expense, expected_receipt
    number = Column(Text, nullable=True)  # e.g. INV-2024-0012
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(Text, nullable=False, default="SAR")
    due_date = Column(Date, nullable=True)
    counterparty_name = Column(Text, nullable=True)  # client or vendor
    counterparty_account = Column(Text, nullable=True)  # IBAN / account number
    reference = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        """Convert ledger record to dictionary representation."""
        return {
            "id": str(self.id),
            "record_type": self.record_type,
            "number": self.number,
            "amount": str(self.amount),
            "currency": self.currency,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "counterparty_name": self.counterparty_name,
            "status": self.status,
        }


Index("idx_ledger_record_org_type_status", LedgerRecord.org_id, LedgerRecord.record_type, LedgerRecord.status)
Index("idx_ledger_record_org_due_date", LedgerRecord.org_id, LedgerRecord.due_date)
