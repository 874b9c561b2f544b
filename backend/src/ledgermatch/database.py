"""Engine and session factory for the reconciliation store.

Request handlers get a session per request through get_db. Background
jobs (pattern cleanup) and parallel batch workers open their own
sessions from SessionLocal or from a sessionmaker bound to the same
engine.
"""

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from .config import get_settings


def _build_engine(url: str):
    options = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Batch workers may touch the connection from other threads
        options["connect_args"] = {"check_same_thread": False}
    else:
        settings = get_settings()
        options["pool_size"] = settings.DB_POOL_SIZE
        options["max_overflow"] = settings.DB_MAX_OVERFLOW
    return create_engine(url, **options)


engine = _build_engine(get_settings().DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; services commit their own units of work."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
