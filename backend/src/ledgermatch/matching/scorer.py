"""Match scoring for bank transaction reconciliation.

Weighted feature model, each feature contributing 0..W points:
- amount: full weight within tolerance, linear decay to zero at cutoff
- date: full weight at zero offset, linear decay to zero at max offset
- reference: separator-free containment (1.0) or token-Jaccard similarity
- counterparty: account equality (1.0) or fuzzy name ratio above threshold
- pattern: cap * strength / (1 + strength) for a learned pattern

score = round_half_up(min(100, sum(points)))
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Mapping, List, Dict, Tuple

from rapidfuzz import fuzz

from .normalize import (
    normalize_reference,
    reference_parts,
    contains_reference,
    normalize_account,
    normalize_counterparty,
    tokenize,
    jaccard,
    counterparty_key,
    pattern_fingerprint,
)
from .ports import TransactionSnapshot, Candidate, PatternSnapshot, MatchReason, MatchResult
from .schemas import MatchingConfig

# Minimum length of a reference for containment matching
MIN_REFERENCE_LENGTH = 4


class MatchScorer:
    """Score (transaction, candidate) pairs.

    Pure in-memory computation: no database access, no clock reads. Given
    identical inputs the score and reasons are identical.
    """

    def __init__(self, config: MatchingConfig):
        """Initialize scorer.

        Args:
            config: Matching configuration (weights, decay curves, bands)
        """
        self.config = config

    def score(
        self,
        transaction: TransactionSnapshot,
        candidate: Candidate,
        patterns: Optional[Mapping[str, PatternSnapshot]] = None,
    ) -> MatchResult:
        """Score one candidate against a transaction.

        Args:
            transaction: Transaction being reconciled
            candidate: Candidate record
            patterns: Active patterns of the tenant keyed by fingerprint

        Returns:
            MatchResult with score, tier, reasons and feature points
        """
        amount_points, amount_reason = self._amount_points(transaction, candidate)
        date_points, date_reason, date_offset = self._date_points(transaction, candidate)
        reference_points, reference_reason = self._reference_points(transaction, candidate)
        counterparty_points, counterparty_reason = self._counterparty_points(transaction, candidate)
        pattern_points, pattern_reason = self._pattern_points(transaction, candidate, patterns or {})

        features = {
            "amount": round(amount_points, 4),
            "date": round(date_points, 4),
            "reference": round(reference_points, 4),
            "counterparty": round(counterparty_points, 4),
            "pattern": round(pattern_points, 4),
        }

        total = amount_points + date_points + reference_points + counterparty_points + pattern_points
        score = round_score(min(100.0, total))

        reasons = [
            reason for reason in (
                amount_reason, date_reason, reference_reason, counterparty_reason, pattern_reason
            )
            if reason is not None and reason.points >= self.config.reason_min_points
        ]
        reasons.sort(key=lambda r: (-r.points, r.code))

        return MatchResult(
            candidate=candidate,
            score=score,
            confidence=self.config.tier_for(score),
            reasons=reasons,
            features=features,
            date_offset_days=date_offset,
        )

    def score_all(
        self,
        transaction: TransactionSnapshot,
        candidates: List[Candidate],
        patterns: Optional[Mapping[str, PatternSnapshot]] = None,
    ) -> List[MatchResult]:
        """Score every candidate (input order preserved)."""
        return [self.score(transaction, candidate, patterns) for candidate in candidates]

    def _amount_points(
        self, transaction: TransactionSnapshot, candidate: Candidate
    ) -> Tuple[float, Optional[MatchReason]]:
        """Amount closeness relative to the transaction amount."""
        if (transaction.currency or "").upper() != (candidate.currency or "").upper():
            return 0.0, None

        weight = self.config.amount_weight
        tx_amount = abs(Decimal(transaction.amount))
        candidate_amount = abs(Decimal(candidate.amount))
        difference = abs(tx_amount - candidate_amount)

        if difference == 0:
            return weight, MatchReason("amount_exact", weight, f"Amount {candidate_amount} matches exactly")
        if tx_amount == 0:
            return 0.0, None

        diff_pct = float(difference / tx_amount * 100)
        tolerance = self.config.amount_tolerance_pct
        cutoff = self.config.amount_cutoff_pct

        if diff_pct <= tolerance:
            return weight, MatchReason(
                "amount_within_tolerance", weight, f"Amount differs by {diff_pct:.2f}% (within tolerance)"
            )
        if diff_pct >= cutoff:
            return 0.0, None

        points = weight * (cutoff - diff_pct) / (cutoff - tolerance)
        return points, MatchReason("amount_close", points, f"Amount differs by {diff_pct:.2f}%")

    def _date_points(
        self, transaction: TransactionSnapshot, candidate: Candidate
    ) -> Tuple[float, Optional[MatchReason], Optional[int]]:
        """Date proximity between booking date and due date."""
        if candidate.due_date is None:
            return 0.0, None, None

        weight = self.config.date_weight
        max_offset = self.config.date_max_offset_days
        offset = abs((transaction.date - candidate.due_date).days)

        if offset == 0:
            return weight, MatchReason("date_same_day", weight, "Same date"), offset
        if offset >= max_offset:
            return 0.0, None, offset

        points = weight * (max_offset - offset) / max_offset
        return points, MatchReason("date_near", points, f"Date {offset} day(s) apart"), offset

    def _reference_points(
        self, transaction: TransactionSnapshot, candidate: Candidate
    ) -> Tuple[float, Optional[MatchReason]]:
        """Reference / description similarity."""
        weight = self.config.reference_weight
        if weight == 0:
            return 0.0, None

        tx_parts = reference_parts(transaction.reference) + reference_parts(transaction.description)
        tx_reference = normalize_reference(transaction.reference)

        for identifier in (candidate.number, candidate.reference):
            normalized = normalize_reference(identifier)
            if len(normalized) < MIN_REFERENCE_LENGTH:
                continue
            reverse = len(tx_reference) >= MIN_REFERENCE_LENGTH and tx_reference in normalized
            if reverse or contains_reference(tx_parts, identifier):
                return weight, MatchReason("reference_match", weight, f"Reference {identifier} found")

        similarity = jaccard(
            tokenize(transaction.reference, transaction.description),
            tokenize(candidate.number, candidate.reference, candidate.description),
        )
        if similarity < self.config.reference_min_similarity or similarity == 0:
            return 0.0, None

        points = weight * similarity
        return points, MatchReason(
            "reference_similar", points, f"Reference/description similarity {similarity:.2f}"
        )

    def _counterparty_points(
        self, transaction: TransactionSnapshot, candidate: Candidate
    ) -> Tuple[float, Optional[MatchReason]]:
        """Counterparty identity by account number or fuzzy name."""
        weight = self.config.counterparty_weight

        tx_account = normalize_account(transaction.counterparty_account)
        if tx_account and tx_account == normalize_account(candidate.counterparty_account):
            return weight, MatchReason("counterparty_account_match", weight, "Counterparty account matches")

        tx_name = normalize_counterparty(transaction.counterparty_name)
        candidate_name = normalize_counterparty(candidate.counterparty_name)
        if not tx_name or not candidate_name:
            return 0.0, None

        ratio = fuzz.token_sort_ratio(tx_name, candidate_name)
        if ratio < self.config.counterparty_fuzzy_threshold:
            return 0.0, None

        points = weight * ratio / 100.0
        return points, MatchReason(
            "counterparty_name_match", points, f"Counterparty name similarity {ratio:.0f}%"
        )

    def _pattern_points(
        self,
        transaction: TransactionSnapshot,
        candidate: Candidate,
        patterns: Mapping[str, PatternSnapshot],
    ) -> Tuple[float, Optional[MatchReason]]:
        """Bounded boost from a learned counterparty -> record type pattern."""
        if not patterns:
            return 0.0, None

        key = counterparty_key(transaction.counterparty_account, transaction.counterparty_name)
        if not key:
            return 0.0, None

        pattern = patterns.get(pattern_fingerprint(key, candidate.record_type))
        if pattern is None or pattern.strength <= 0:
            return 0.0, None

        points = pattern_boost(self.config.pattern_boost_cap, pattern.strength)
        return points, MatchReason(
            "pattern_boost", points, f"Learned pattern for {candidate.record_type} (strength {pattern.strength:.2f})"
        )


def pattern_boost(cap: float, strength: float) -> float:
    """Diminishing-returns boost, strictly below cap for any finite strength."""
    if strength <= 0:
        return 0.0
    return cap * strength / (1.0 + strength)


def round_score(value: float) -> int:
    """Round a point total half-up to an integer score in 0..100."""
    rounded = Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, min(100, int(rounded)))


def summarize_results(results: List[MatchResult]) -> Dict[str, int]:
    """Count results per confidence tier."""
    distribution = {"high": 0, "medium": 0, "low": 0}
    for result in results:
        distribution[result.confidence] += 1
    return distribution
