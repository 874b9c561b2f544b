"""Pytest fixtures for reconciliation testing.

Provides reusable test fixtures for:
- Database session on a fresh in-memory SQLite schema
- Test organizations (two tenants for isolation tests)
- Bank transaction / ledger record / pattern factories
- FastAPI test client bound to the test session

Usage:
    def test_confirm(db_session, test_org, make_transaction, make_record):
        tx = make_transaction(amount="1000.00")
        ...
"""

import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

# Set environment variables BEFORE importing ledgermatch so that settings
# and the module-level engine pick them up
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from ledgermatch.database import get_db as database_get_db
from ledgermatch.matching.schemas import MatchingConfig
from ledgermatch.models import Base, Org, BankTransaction, LedgerRecord, MatchingPattern

# Single shared in-memory database; TestClient requests run on another thread
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

REFERENCE_DATE = date(2024, 3, 15)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test.

    Creates all tables before the test and drops them after.
    Each test gets a clean database state.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def test_org(db_session: Session) -> Org:
    """Create a test organization."""
    org = Org(slug="test-org", name="Test Organization")
    db_session.add(org)
    db_session.commit()
    db_session.refresh(org)
    return org


@pytest.fixture(scope="function")
def other_org(db_session: Session) -> Org:
    """Create a second organization for tenant isolation tests."""
    org = Org(slug="other-org", name="Other Organization")
    db_session.add(org)
    db_session.commit()
    db_session.refresh(org)
    return org


@pytest.fixture
def config() -> MatchingConfig:
    """Default matching configuration."""
    return MatchingConfig()


@pytest.fixture
def make_transaction(db_session: Session, test_org: Org):
    """Factory for persisted bank transactions (defaults: 1000.00 SAR credit)."""

    def _make(**overrides) -> BankTransaction:
        values = {
            "org_id": test_org.id,
            "amount": Decimal("1000.00"),
            "currency": "SAR",
            "date": REFERENCE_DATE,
            "description": "Incoming transfer",
            "reference": None,
            "counterparty_name": "Acme Trading LLC",
            "counterparty_account": None,
        }
        values.update(overrides)
        if isinstance(values["amount"], str):
            values["amount"] = Decimal(values["amount"])
        transaction = BankTransaction(**values)
        db_session.add(transaction)
        db_session.commit()
        db_session.refresh(transaction)
        return transaction

    return _make


@pytest.fixture
def make_record(db_session: Session, test_org: Org):
    """Factory for persisted ledger records (defaults: open 1000.00 SAR invoice)."""

    def _make(**overrides) -> LedgerRecord:
        values = {
            "org_id": test_org.id,
            "record_type": "invoice",
            "number": None,
            "amount": Decimal("1000.00"),
            "currency": "SAR",
            "due_date": REFERENCE_DATE,
            "counterparty_name": "Acme Trading LLC",
            "counterparty_account": None,
            "status": "sent",
        }
        values.update(overrides)
        if isinstance(values["amount"], str):
            values["amount"] = Decimal(values["amount"])
        record = LedgerRecord(**values)
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)
        return record

    return _make


@pytest.fixture
def make_pattern(db_session: Session, test_org: Org):
    """Factory for persisted matching patterns.

    age_days sets last_seen_at that many days in the past.
    """

    def _make(counterparty_key: str, record_type: str = "invoice", strength: float = 1.0,
              age_days: int = 0, org_id=None, **overrides) -> MatchingPattern:
        pattern = MatchingPattern(
            org_id=org_id or test_org.id,
            fingerprint=f"{counterparty_key}|{record_type}",
            counterparty_key=counterparty_key,
            record_type=record_type,
            strength=strength,
            confirmations=overrides.pop("confirmations", 1),
            rejections=overrides.pop("rejections", 0),
            is_active=overrides.pop("is_active", True),
            last_seen_at=datetime.now(timezone.utc) - timedelta(days=age_days),
        )
        db_session.add(pattern)
        db_session.commit()
        db_session.refresh(pattern)
        return pattern

    return _make


@pytest.fixture(scope="function")
def client(db_session: Session):
    """Create a test client bound to the test database session."""
    from ledgermatch.main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[database_get_db] = override_get_db

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def org_headers(test_org: Org):
    """Gateway headers for the test organization."""
    return {"X-Org-ID": str(test_org.id)}
