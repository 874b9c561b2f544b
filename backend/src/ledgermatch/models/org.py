"""Org model - Root entity for multi-tenant isolation"""

import re
import uuid

from sqlalchemy import Column, Text, DateTime, Uuid
from sqlalchemy.orm import validates

from .base import Base, PortableJSONB, utcnow


class Org(Base):
    """
    Organization model - root entity for the multi-tenant system.

    Each organization represents a distinct tenant with isolated data.
    Reconciliation tables reference org.id and every query filters on it.

    settings_json["matching"] holds per-tenant overrides of the matching
    configuration (thresholds, weights, decay curves).
    """
    __tablename__ = "org"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    slug = Column(Text, nullable=False, unique=True)
    settings_json = Column(PortableJSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @validates('slug')
    def validate_slug(self, key, value):
        """
        Ensure slug is URL-friendly.

        Pattern: ^[a-z0-9-]+$

        Raises:
            ValueError: If slug doesn't match pattern or length requirements
        """
        if not re.match(r'^[a-z0-9-]+$', value):
            raise ValueError(
                "Slug must contain only lowercase letters, numbers, and hyphens"
            )
        if len(value) < 2 or len(value) > 100:
            raise ValueError("Slug must be between 2 and 100 characters")
        return value

    def matching_overrides(self) -> dict:
        """Return the tenant's matching configuration overrides."""
        return (self.settings_json or {}).get("matching", {})

    def __repr__(self):
        return f"<Org(id={self.id}, slug='{self.slug}')>"
