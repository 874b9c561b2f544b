"""Health probes for the reconciliation service.

The database is required for every matching and learning operation; the
Redis broker only feeds the nightly pattern cleanup, so losing it degrades
the service instead of taking it down.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from .logging_config import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Result of probing one dependency."""
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "message": self.message, "latency_ms": self.latency_ms}


def _probe(name: str, call: Callable[[], Any], errors: tuple, failure_status: HealthStatus) -> ComponentHealth:
    start = time.perf_counter()
    try:
        call()
    except errors as e:
        logger.warning(f"{name} probe failed: {e}")
        return ComponentHealth(status=failure_status, message=f"{name} unavailable: {e}")
    latency_ms = round((time.perf_counter() - start) * 1000, 2)
    return ComponentHealth(status=HealthStatus.HEALTHY, message=f"{name} reachable", latency_ms=latency_ms)


def check_database_health(db: Session) -> ComponentHealth:
    """SELECT 1 against the reconciliation database."""
    return _probe("database", lambda: db.execute(text("SELECT 1")), (SQLAlchemyError,), HealthStatus.UNHEALTHY)


def check_broker_health() -> ComponentHealth:
    """PING the Celery broker that schedules pattern cleanup."""
    def ping():
        redis.from_url(get_settings().CELERY_BROKER_URL, socket_connect_timeout=1).ping()

    return _probe("broker", ping, (redis.RedisError, OSError), HealthStatus.DEGRADED)


def get_overall_health(components: Dict[str, ComponentHealth]) -> HealthStatus:
    """Worst status across components."""
    statuses = {c.status for c in components.values()}
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY
