"""SQLAlchemy models for the reconciliation backend"""

from .base import Base, PortableJSONB
from .org import Org
from .bank_transaction import BankTransaction
from .ledger_record import LedgerRecord, RECORD_TYPES, OPEN_STATUSES
from .transaction_match import TransactionMatch, ACTIVE_MATCH_STATUSES
from .matching_pattern import MatchingPattern
from .feedback_event import MatchFeedbackEvent

__all__ = [
    "Base",
    "PortableJSONB",
    "Org",
    "BankTransaction",
    "LedgerRecord",
    "RECORD_TYPES",
    "OPEN_STATUSES",
    "TransactionMatch",
    "ACTIVE_MATCH_STATUSES",
    "MatchingPattern",
    "MatchFeedbackEvent",
]
