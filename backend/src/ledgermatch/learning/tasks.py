"""Celery tasks for learned pattern maintenance.

Tasks:
- cleanup_patterns_task: daily retention cleanup (scheduled in ledgermatch.worker)
"""

import logging
from typing import Dict, Any, Optional
from uuid import UUID

from celery import shared_task

from ..config import get_settings
from ..database import SessionLocal
from .pattern_store import run_global_pattern_cleanup

logger = logging.getLogger(__name__)


@shared_task(name="learning.cleanup_patterns", bind=True)
def cleanup_patterns_task(
    self,
    org_id: Optional[str] = None,
    max_age_days: Optional[int] = None,
    max_patterns: Optional[int] = None,
) -> Dict[str, Any]:
    """Apply pattern retention bounds for all organizations (or one).

    Bounds default to PATTERN_CLEANUP_MAX_AGE_DAYS and
    PATTERN_CLEANUP_MAX_PATTERNS. The task is idempotent and never raises;
    failures are reported in the returned dict.

    Returns:
        Dict with status, orgs_processed, errors, deleted, deactivated,
        duration_seconds
    """
    settings = get_settings()
    max_age_days = max_age_days or settings.PATTERN_CLEANUP_MAX_AGE_DAYS
    max_patterns = max_patterns or settings.PATTERN_CLEANUP_MAX_PATTERNS

    logger.info("Pattern cleanup task started", extra={"org_id": org_id})

    db = SessionLocal()
    try:
        statistics = run_global_pattern_cleanup(
            db,
            max_age_days=max_age_days,
            max_patterns=max_patterns,
            org_id=UUID(org_id) if org_id else None,
        )
        result = {"status": "completed", **statistics}
        logger.info("Pattern cleanup task completed", extra={"org_id": org_id})
        return result

    except Exception as e:
        logger.error(
            "Pattern cleanup task failed",
            exc_info=True,
            extra={"org_id": org_id}
        )
        return {
            "status": "failed",
            "error": str(e),
            "deleted": 0,
            "deactivated": 0,
        }

    finally:
        db.close()
