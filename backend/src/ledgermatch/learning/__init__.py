"""Pattern learning: tenant-scoped pattern store and feedback loop."""

from .pattern_store import PatternStore, PatternCleanupResult, run_global_pattern_cleanup
from .feedback import LearningFeedback, EVENT_MATCH_CONFIRMED, EVENT_MATCH_REJECTED

__all__ = [
    "PatternStore",
    "PatternCleanupResult",
    "run_global_pattern_cleanup",
    "LearningFeedback",
    "EVENT_MATCH_CONFIRMED",
    "EVENT_MATCH_REJECTED",
]
