"""Metrics, health and readiness endpoints."""

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from ..database import get_db
from .health import HealthStatus, check_broker_health, check_database_health, get_overall_health

router = APIRouter(tags=["Observability"])


@router.get("/metrics", include_in_schema=False)
def metrics():
    """Prometheus text exposition of the matching and learning counters."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health", summary="Health check endpoint")
def health_check(db: Session = Depends(get_db)):
    """Database and broker status; 503 only when the database is down."""
    components = {
        "database": check_database_health(db),
        "broker": check_broker_health(),
    }
    overall = get_overall_health(components)
    return JSONResponse(
        content={
            "status": overall.value,
            "components": {name: component.to_dict() for name, component in components.items()},
        },
        status_code=503 if overall == HealthStatus.UNHEALTHY else 200,
    )


@router.get("/ready", summary="Readiness check endpoint")
def readiness_check(db: Session = Depends(get_db)):
    """Ready once the database answers; the broker is not required."""
    database = check_database_health(db)
    if database.status != HealthStatus.HEALTHY:
        return JSONResponse(content={"status": "not_ready", "message": database.message}, status_code=503)
    return {"status": "ready"}
