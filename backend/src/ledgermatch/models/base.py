"""Declarative base and column helpers shared by the reconciliation models"""

from datetime import datetime, timezone

from sqlalchemy import JSON, TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PortableJSONB(TypeDecorator):
    """JSONB on PostgreSQL, plain JSON elsewhere.

    Org settings, match reasons and feedback metadata are stored as JSONB in
    production; the in-memory SQLite test database only understands JSON.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        target = JSONB() if dialect.name == "postgresql" else JSON()
        return dialect.type_descriptor(target)


def utcnow() -> datetime:
    """Aware UTC timestamp for created/updated/matched columns."""
    return datetime.now(timezone.utc)
