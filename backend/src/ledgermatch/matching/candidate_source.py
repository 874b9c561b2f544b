"""Candidate lookup for transaction matching.

SqlCandidateSource pre-filters the ledger_record table by tenant,
currency, open status, direction-compatible record types, amount window
and date window, then orders by amount distance and date distance and
caps the result. Scoring cost stays linear in the cap.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import and_, or_, func
from sqlalchemy.orm import Session

from ..models.bank_transaction import BankTransaction
from ..models.ledger_record import LedgerRecord, OPEN_STATUSES
from .ports import CandidateSourcePort, CandidateScope, Candidate, TransactionSnapshot, NotFoundError

# Record types that can absorb money in / money out
DIRECTION_RECORD_TYPES = {
    "credit": ("invoice", "payment", "expected_receipt"),
    "debit": ("bill", "expense", "payment"),
}

# Rows fetched from SQL before the in-process tie-break and cap
PREFETCH_FACTOR = 3


def snapshot_transaction(transaction: BankTransaction) -> TransactionSnapshot:
    """Immutable snapshot of a bank transaction row."""
    return TransactionSnapshot(
        id=transaction.id,
        org_id=transaction.org_id,
        amount=Decimal(transaction.amount),
        currency=transaction.currency,
        date=transaction.date,
        description=transaction.description,
        reference=transaction.reference,
        counterparty_name=transaction.counterparty_name,
        counterparty_account=transaction.counterparty_account,
        matched=bool(transaction.matched),
        account_id=transaction.account_id,
    )


def candidate_from_record(record: LedgerRecord) -> Candidate:
    """Immutable candidate view of a ledger record row."""
    return Candidate(
        id=record.id,
        org_id=record.org_id,
        record_type=record.record_type,
        amount=Decimal(record.amount),
        currency=record.currency,
        due_date=record.due_date,
        number=record.number,
        counterparty_name=record.counterparty_name,
        counterparty_account=record.counterparty_account,
        reference=record.reference,
        description=record.description,
        status=record.status,
    )


def compatible_record_types(transaction: TransactionSnapshot, scope: CandidateScope) -> Tuple[str, ...]:
    """Record types allowed by the transaction direction and the scope filter."""
    allowed = DIRECTION_RECORD_TYPES[transaction.direction]
    if scope.record_types:
        requested = set(scope.record_types)
        return tuple(t for t in allowed if t in requested)
    return allowed


def amount_bounds(transaction: TransactionSnapshot, scope: CandidateScope) -> Tuple[Decimal, Decimal]:
    """Inclusive absolute amount window around the transaction amount."""
    amount = abs(Decimal(transaction.amount))
    window = amount * Decimal(str(scope.amount_window_pct)) / Decimal(100)
    return amount - window, amount + window


def _sort_key(transaction: TransactionSnapshot, candidate: Candidate):
    amount = abs(Decimal(transaction.amount))
    days = abs((transaction.date - candidate.due_date).days) if candidate.due_date else 10 ** 6
    return abs(abs(candidate.amount) - amount), days, str(candidate.id)


def _check_scope(transaction: TransactionSnapshot, scope: CandidateScope) -> None:
    if scope.org_id != transaction.org_id:
        raise NotFoundError(f"Transaction {transaction.id} not found")


class SqlCandidateSource(CandidateSourcePort):
    """Candidate source over the ledger_record table.

    Works on a bound session, or opens a short-lived session per lookup from
    session_factory so that parallel batch workers never share a session.
    """

    def __init__(
        self,
        db: Optional[Session] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        if db is None and session_factory is None:
            raise ValueError("SqlCandidateSource requires a session or a session factory")
        self.db = db
        self.session_factory = session_factory

    def candidates(self, transaction: TransactionSnapshot, scope: CandidateScope) -> List[Candidate]:
        _check_scope(transaction, scope)

        record_types = compatible_record_types(transaction, scope)
        if not record_types:
            return []

        if self.db is not None:
            rows = self._query(self.db, transaction, scope, record_types)
        else:
            with self.session_factory() as session:
                rows = self._query(session, transaction, scope, record_types)

        candidates = [candidate_from_record(row) for row in rows]
        candidates.sort(key=lambda c: _sort_key(transaction, c))
        return candidates[:scope.limit]

    def _query(
        self,
        session: Session,
        transaction: TransactionSnapshot,
        scope: CandidateScope,
        record_types: Tuple[str, ...],
    ) -> List[LedgerRecord]:
        low, high = amount_bounds(transaction, scope)
        window = timedelta(days=scope.date_window_days)
        amount = abs(Decimal(transaction.amount))

        open_status = or_(*[
            and_(LedgerRecord.record_type == record_type, LedgerRecord.status.in_(OPEN_STATUSES[record_type]))
            for record_type in record_types
        ])

        return (
            session.query(LedgerRecord)
            .filter(
                LedgerRecord.org_id == scope.org_id,
                func.upper(LedgerRecord.currency) == (transaction.currency or "").upper(),
                open_status,
                LedgerRecord.amount >= low,
                LedgerRecord.amount <= high,
                LedgerRecord.due_date >= transaction.date - window,
                LedgerRecord.due_date <= transaction.date + window,
            )
            .order_by(func.abs(LedgerRecord.amount - amount), LedgerRecord.id)
            .limit(scope.limit * PREFETCH_FACTOR)
            .all()
        )


class InMemoryCandidateSource(CandidateSourcePort):
    """Candidate source over a fixed list of candidates.

    Applies the same pre-filter as SqlCandidateSource.
    """

    def __init__(self, candidates: Iterable[Candidate]):
        self._candidates = list(candidates)

    def candidates(self, transaction: TransactionSnapshot, scope: CandidateScope) -> List[Candidate]:
        _check_scope(transaction, scope)

        record_types = compatible_record_types(transaction, scope)
        low, high = amount_bounds(transaction, scope)
        window = scope.date_window_days
        currency = (transaction.currency or "").upper()

        matches = []
        for candidate in self._candidates:
            if candidate.org_id != scope.org_id or candidate.record_type not in record_types:
                continue
            if candidate.status is not None and candidate.status not in OPEN_STATUSES.get(candidate.record_type, ()):
                continue
            if (candidate.currency or "").upper() != currency:
                continue
            if not low <= abs(candidate.amount) <= high:
                continue
            if candidate.due_date is None or abs((transaction.date - candidate.due_date).days) > window:
                continue
            matches.append(candidate)

        matches.sort(key=lambda c: _sort_key(transaction, c))
        return matches[:scope.limit]
