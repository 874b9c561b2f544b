"""Decision policy: ranked scores -> auto-match, suggest or unmatched."""

from typing import List

from .ports import TransactionSnapshot, MatchResult, MatchDecision
from .schemas import MatchingConfig

OUTCOME_AUTO_MATCH = "auto_match"
OUTCOME_SUGGEST = "suggest"
OUTCOME_UNMATCHED = "unmatched"


def rank_results(results: List[MatchResult]) -> List[MatchResult]:
    """Order results by score DESC, date offset ASC (missing last), candidate id."""
    return sorted(
        results,
        key=lambda r: (
            -r.score,
            r.date_offset_days if r.date_offset_days is not None else float("inf"),
            str(r.candidate.id),
        ),
    )


class DecisionPolicy:
    """Classify a transaction's scored candidates.

    Auto-apply requires top score >= auto_threshold AND a margin over the
    runner-up strictly greater than min_margin. A transaction that already
    carries an active match is never auto-applied.
    """

    def __init__(self, config: MatchingConfig):
        self.config = config

    def decide(self, transaction: TransactionSnapshot, results: List[MatchResult]) -> MatchDecision:
        """Rank results and decide the outcome.

        Args:
            transaction: Transaction the results belong to
            results: Scored candidates in any order

        Returns:
            MatchDecision
        """
        ranked = rank_results(results)
        if not ranked:
            return MatchDecision(
                outcome=OUTCOME_UNMATCHED,
                best_match=None,
                auto_apply=False,
                suggestions=[],
                ranked=[],
                already_matched=transaction.matched,
            )

        top = ranked[0]
        margin = top.score - ranked[1].score if len(ranked) > 1 else top.score

        auto_apply = (
            not transaction.matched
            and top.score >= self.config.auto_threshold
            and margin > self.config.min_margin
        )
        if auto_apply:
            return MatchDecision(
                outcome=OUTCOME_AUTO_MATCH,
                best_match=top,
                auto_apply=True,
                suggestions=[],
                ranked=ranked,
                margin=margin,
            )

        suggestions = [r for r in ranked if r.score >= self.config.suggest_threshold]
        suggestions = suggestions[:self.config.max_suggestions]
        if suggestions:
            return MatchDecision(
                outcome=OUTCOME_SUGGEST,
                best_match=top,
                auto_apply=False,
                suggestions=suggestions,
                ranked=ranked,
                margin=margin,
                already_matched=transaction.matched,
            )

        return MatchDecision(
            outcome=OUTCOME_UNMATCHED,
            best_match=None,
            auto_apply=False,
            suggestions=[],
            ranked=ranked,
            margin=margin,
            already_matched=transaction.matched,
        )
