"""Text normalization for reconciliation scoring and pattern fingerprints.

The same normalization is applied on both sides of every comparison:
bank feed text and ledger record fields.
"""

import re
import unicodedata
from typing import Iterable, List, Optional, Sequence, Set

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "be", "has",
    "payment", "transfer", "debit", "credit", "transaction", "ref", "no",
})

LEGAL_SUFFIXES = frozenset({
    "inc", "llc", "ltd", "co", "corp", "company", "est", "gmbh", "plc", "llp",
})

_NON_ALNUM = re.compile(r"[^0-9a-z\u0600-\u06ff]+")
_REFERENCE_STRIP = re.compile(r"[\s\-_/.#]+")


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, strip accents and collapse punctuation to single spaces."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped.casefold()).strip()


def normalize_reference(value: Optional[str]) -> str:
    """Reference number without separators: 'INV-2024/0012' -> 'inv20240012'."""
    if not value:
        return ""
    return _REFERENCE_STRIP.sub("", value).casefold()


def normalize_account(value: Optional[str]) -> str:
    """IBAN / account number without spaces or dashes, upper case."""
    if not value:
        return ""
    return re.sub(r"[\s\-]+", "", value).upper()


def normalize_counterparty(value: Optional[str]) -> str:
    """Counterparty name without legal-form suffixes."""
    words = [w for w in normalize_text(value).split() if w not in LEGAL_SUFFIXES]
    return " ".join(words)


def tokenize(*values: Optional[str]) -> Set[str]:
    """Significant tokens of one or more strings (length >= 2, no stop words)."""
    tokens = set()
    for value in values:
        for word in normalize_text(value).split():
            if len(word) >= 2 and word not in STOP_WORDS:
                tokens.add(word)
    return tokens


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
    """Token-set Jaccard similarity in [0, 1]."""
    left_set, right_set = set(left), set(right)
    if not left_set or not right_set:
        return 0.0
    return len(left_set & right_set) / len(left_set | right_set)


def counterparty_key(counterparty_account: Optional[str], counterparty_name: Optional[str]) -> str:
    """Stable key identifying who is on the other side of a transaction.

    The account identifier wins over the normalized name. Empty string when
    neither is known; such transactions neither learn nor get a pattern boost.
    """
    account = normalize_account(counterparty_account)
    if account:
        return f"acct:{account}"
    name = normalize_counterparty(counterparty_name)
    if name:
        return f"name:{name}"
    return ""


def reference_parts(value: Optional[str]) -> List[str]:
    """Alphanumeric runs of a reference or free text, in order."""
    return normalize_text(value).split()


def contains_reference(parts: Sequence[str], identifier: Optional[str]) -> bool:
    """True when identifier appears in parts without joining separate words.

    'INV-2024/0012' is found in ['inv', '2024', '0012'] and in ['inv20240012'],
    but '2024' is not found in ['20', '24'].
    """
    wanted = reference_parts(identifier)
    if not wanted:
        return False
    if "".join(wanted) in parts:
        return True
    size = len(wanted)
    return any(list(parts[i:i + size]) == wanted for i in range(len(parts) - size + 1))


def pattern_fingerprint(key: str, record_type: str) -> str:
    """Fingerprint of a learned pattern: '<counterparty key>|<record type>'."""
    return f"{key}|{record_type}"
