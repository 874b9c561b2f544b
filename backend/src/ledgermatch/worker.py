"""Celery application for background reconciliation jobs.

Start a worker and the beat scheduler with:
    celery -A ledgermatch.worker worker --beat
"""

from celery import Celery
from celery.schedules import crontab

from .config import get_settings

settings = get_settings()

celery_app = Celery(
    "ledgermatch",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["ledgermatch.learning.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "learning.*": {"queue": "maintenance"},
    },
    beat_schedule={
        "pattern-cleanup-daily": {
            "task": "learning.cleanup_patterns",
            "schedule": crontab(hour=3, minute=0),  # 03:00 UTC
            "options": {"expires": 3600},
        },
    },
)
