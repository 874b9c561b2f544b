"""Tenant-partitioned repository of learned matching patterns.

Patterns are keyed by (org_id, fingerprint). Scoring only reads a
snapshot of active patterns; retention cleanup runs as short bulk
statements so it never holds locks that scoring reads wait on.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..matching.ports import PatternSnapshot
from ..models.matching_pattern import MatchingPattern
from ..models.org import Org
from ..observability.metrics import patterns_cleaned_total

logger = logging.getLogger(__name__)

MAX_PATTERN_LIST_LIMIT = 100


@dataclass
class PatternCleanupResult:
    """Outcome of one cleanup run for one organization."""
    deleted: int = 0
    deactivated: int = 0
    remaining_active: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "deleted": self.deleted,
            "deactivated": self.deactivated,
            "remaining_active": self.remaining_active,
        }


def empty_statistics() -> Dict[str, Any]:
    """Statistics payload reported when storage is unavailable."""
    return {
        "total": 0,
        "active": 0,
        "inactive": 0,
        "total_confirmations": 0,
        "total_rejections": 0,
        "avg_strength": 0.0,
        "success_rate": 0.0,
        "by_record_type": {},
    }


class PatternStore:
    """Repository for MatchingPattern rows.

    Every method takes the tenant explicitly; nothing is cached on the
    instance, so one store can serve any number of organizations.
    """

    def __init__(self, db: Session):
        """Initialize pattern store.

        Args:
            db: Database session
        """
        self.db = db

    def get(self, org_id: UUID, fingerprint: str) -> Optional[MatchingPattern]:
        """Pattern of a tenant by fingerprint, active or not."""
        return self.db.query(MatchingPattern).filter(
            MatchingPattern.org_id == org_id,
            MatchingPattern.fingerprint == fingerprint,
        ).first()

    def snapshot(self, org_id: UUID) -> Dict[str, PatternSnapshot]:
        """Active patterns with positive strength keyed by fingerprint.

        The snapshot is what the scorer sees for the duration of one
        evaluation.
        """
        rows = self.db.query(
            MatchingPattern.fingerprint,
            MatchingPattern.counterparty_key,
            MatchingPattern.record_type,
            MatchingPattern.strength,
        ).filter(
            MatchingPattern.org_id == org_id,
            MatchingPattern.is_active.is_(True),
            MatchingPattern.strength > 0,
        ).all()

        return {
            row.fingerprint: PatternSnapshot(
                fingerprint=row.fingerprint,
                counterparty_key=row.counterparty_key,
                record_type=row.record_type,
                strength=float(row.strength),
            )
            for row in rows
        }

    def active_patterns(
        self,
        org_id: UUID,
        record_type: Optional[str] = None,
        min_strength: float = 0.0,
        limit: int = 50,
    ) -> List[MatchingPattern]:
        """Active patterns sorted by strength DESC.

        Args:
            org_id: Organization UUID
            record_type: Only patterns for this record type
            min_strength: Minimum strength (inclusive)
            limit: Maximum rows (clamped to 1..100)

        Returns:
            List of MatchingPattern
        """
        limit = max(1, min(limit, MAX_PATTERN_LIST_LIMIT))

        query = self.db.query(MatchingPattern).filter(
            MatchingPattern.org_id == org_id,
            MatchingPattern.is_active.is_(True),
            MatchingPattern.strength > 0,
            MatchingPattern.strength >= min_strength,
        )
        if record_type:
            query = query.filter(MatchingPattern.record_type == record_type)

        return query.order_by(
            MatchingPattern.strength.desc(),
            MatchingPattern.last_seen_at.desc(),
            MatchingPattern.id,
        ).limit(limit).all()

    def cleanup(self, org_id: UUID, max_age_days: int, max_patterns: int) -> PatternCleanupResult:
        """Apply retention bounds to a tenant's patterns.

        1. Delete patterns not reinforced for max_age_days.
        2. Deactivate the weakest active patterns above max_patterns
           (strength ASC, then least recently seen).

        Fails closed: on a storage error the work is rolled back and an
        empty result is returned.

        Args:
            org_id: Organization UUID
            max_age_days: Age limit in days since last reinforcement
            max_patterns: Ceiling on active patterns

        Returns:
            PatternCleanupResult
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)

        try:
            deleted = self.db.query(MatchingPattern).filter(
                MatchingPattern.org_id == org_id,
                MatchingPattern.last_seen_at < cutoff,
            ).delete(synchronize_session=False)

            active_count = self.db.query(func.count(MatchingPattern.id)).filter(
                MatchingPattern.org_id == org_id,
                MatchingPattern.is_active.is_(True),
            ).scalar() or 0

            deactivated = 0
            excess = active_count - max_patterns
            if excess > 0:
                weakest_ids = [
                    row.id for row in self.db.query(MatchingPattern.id).filter(
                        MatchingPattern.org_id == org_id,
                        MatchingPattern.is_active.is_(True),
                    ).order_by(
                        MatchingPattern.strength.asc(),
                        MatchingPattern.last_seen_at.asc(),
                        MatchingPattern.id,
                    ).limit(excess).all()
                ]
                deactivated = self.db.query(MatchingPattern).filter(
                    MatchingPattern.id.in_(weakest_ids),
                ).update({MatchingPattern.is_active: False}, synchronize_session=False)

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Pattern cleanup failed for org {org_id}: {e}",
                exc_info=True,
                extra={"org_id": str(org_id)}
            )
            return PatternCleanupResult()

        # Bulk statements bypass the identity map
        self.db.expire_all()

        result = PatternCleanupResult(
            deleted=deleted,
            deactivated=deactivated,
            remaining_active=max(0, active_count - deactivated),
        )
        patterns_cleaned_total.labels(action="deleted").inc(deleted)
        patterns_cleaned_total.labels(action="deactivated").inc(deactivated)

        logger.info(
            f"Pattern cleanup completed for org {org_id}",
            extra={"org_id": str(org_id), **result.to_dict()}
        )
        return result

    def statistics(self, org_id: UUID) -> Dict[str, Any]:
        """Aggregate learning statistics of a tenant (fails closed)."""
        try:
            rows = self.db.query(
                MatchingPattern.record_type,
                MatchingPattern.is_active,
                func.count(MatchingPattern.id),
                func.coalesce(func.sum(MatchingPattern.confirmations), 0),
                func.coalesce(func.sum(MatchingPattern.rejections), 0),
                func.coalesce(func.sum(MatchingPattern.strength), 0.0),
            ).filter(
                MatchingPattern.org_id == org_id,
            ).group_by(
                MatchingPattern.record_type,
                MatchingPattern.is_active,
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Pattern statistics failed for org {org_id}: {e}",
                exc_info=True,
                extra={"org_id": str(org_id)}
            )
            return empty_statistics()

        stats = empty_statistics()
        active_strength = 0.0
        for record_type, is_active, count, confirmations, rejections, strength in rows:
            stats["total"] += count
            stats["total_confirmations"] += int(confirmations)
            stats["total_rejections"] += int(rejections)
            if is_active:
                stats["active"] += count
                active_strength += float(strength)
            else:
                stats["inactive"] += count

            by_type = stats["by_record_type"].setdefault(record_type, {"total": 0, "active": 0})
            by_type["total"] += count
            if is_active:
                by_type["active"] += count

        feedback_total = stats["total_confirmations"] + stats["total_rejections"]
        if stats["active"]:
            stats["avg_strength"] = round(active_strength / stats["active"], 4)
        if feedback_total:
            stats["success_rate"] = round(stats["total_confirmations"] / feedback_total, 4)
        return stats


def run_global_pattern_cleanup(
    db: Session,
    max_age_days: int,
    max_patterns: int,
    org_id: Optional[UUID] = None,
) -> Dict[str, Any]:
    """Run pattern cleanup for every organization (or one).

    A failure for one organization is logged and counted; the others are
    still processed.

    Returns:
        Dict with orgs_processed, errors, deleted, deactivated, duration_seconds
    """
    started = datetime.now(timezone.utc)
    totals = {"orgs_processed": 0, "errors": 0, "deleted": 0, "deactivated": 0}

    query = db.query(Org.id)
    if org_id is not None:
        query = query.filter(Org.id == org_id)
    org_ids = [row.id for row in query.all()]

    store = PatternStore(db)
    for current_org_id in org_ids:
        try:
            result = store.cleanup(current_org_id, max_age_days, max_patterns)
        except Exception as e:
            db.rollback()
            totals["errors"] += 1
            logger.error(
                f"Pattern cleanup failed for org {current_org_id}: {e}",
                exc_info=True,
                extra={"org_id": str(current_org_id)}
            )
            continue

        totals["orgs_processed"] += 1
        totals["deleted"] += result.deleted
        totals["deactivated"] += result.deactivated

    totals["duration_seconds"] = round((datetime.now(timezone.utc) - started).total_seconds(), 3)
    logger.info("Global pattern cleanup completed", extra={"duration_ms": totals["duration_seconds"] * 1000})
    return totals
