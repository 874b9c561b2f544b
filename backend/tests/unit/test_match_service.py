"""Unit tests for the match service (the write path for matched state).

Tests cover:
- At most one active match per transaction across confirm/reject/unmatch
- Conflicts when another record is already actively matched
- Learning failures never failing the user action
- Suggestions, bulk confirmation and reporting
- Tenant configuration overrides
"""

from uuid import uuid4

import pytest
from prometheus_client import REGISTRY

from ledgermatch.learning.pattern_store import PatternStore
from ledgermatch.matching.candidate_source import snapshot_transaction, candidate_from_record
from ledgermatch.matching.ports import NotFoundError, ValidationError, ConflictError, LearningUpdateError
from ledgermatch.matching.schemas import MatchingConfig
from ledgermatch.matching.scorer import MatchScorer
from ledgermatch.matching.service import MatchService, get_matching_config
from ledgermatch.models.bank_transaction import BankTransaction
from ledgermatch.models.transaction_match import TransactionMatch, ACTIVE_MATCH_STATUSES

FINGERPRINT = "name:acme trading|invoice"


class UnavailableFeedback:
    """Learning feedback whose pattern store is down."""

    def on_confirmation(self, *args, **kwargs):
        raise LearningUpdateError("pattern store unavailable")

    def on_rejection(self, *args, **kwargs):
        raise LearningUpdateError("pattern store unavailable")


@pytest.fixture
def service(db_session, test_org, config) -> MatchService:
    return MatchService(db_session, test_org.id, config)


def _active_rows(db_session, transaction_id) -> int:
    return db_session.query(TransactionMatch).filter(
        TransactionMatch.bank_transaction_id == transaction_id,
        TransactionMatch.status.in_(ACTIVE_MATCH_STATUSES),
    ).count()


def _suggest(service, transaction, record, config=None):
    result = MatchScorer(config or MatchingConfig()).score(
        snapshot_transaction(transaction), candidate_from_record(record)
    )
    return service.save_suggestion(snapshot_transaction(transaction), result)


def _learning_failures(event_type: str) -> float:
    value = REGISTRY.get_sample_value("ledgermatch_learning_failures_total", {"event_type": event_type})
    return value or 0.0


class TestConfirm:

    def test_confirm_sets_matched_state(self, db_session, test_org, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        actor_id = uuid4()

        match = service.confirm_match(transaction.id, record.id, "invoice", score=90, actor_id=actor_id)

        db_session.refresh(transaction)
        assert match.status == "confirmed"
        assert match.method == "manual"
        assert match.confidence == "high"
        assert match.matched_by == actor_id
        assert transaction.matched is True
        assert transaction.matched_record_id == record.id
        assert transaction.matched_record_type == "invoice"
        assert PatternStore(db_session).get(test_org.id, FINGERPRINT).strength == 1.0

    def test_confirm_same_record_twice_is_idempotent(self, db_session, test_org, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()

        first = service.confirm_match(transaction.id, record.id, "invoice")
        second = service.confirm_match(transaction.id, record.id, "invoice")

        assert first.id == second.id
        assert db_session.query(TransactionMatch).count() == 1
        assert PatternStore(db_session).get(test_org.id, FINGERPRINT).strength == 1.0

    def test_confirm_other_record_conflicts(self, db_session, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        other = make_record(number="INV-0002")
        service.confirm_match(transaction.id, record.id, "invoice")

        with pytest.raises(ConflictError):
            service.confirm_match(transaction.id, other.id, "invoice")

        db_session.refresh(transaction)
        assert transaction.matched_record_id == record.id
        assert _active_rows(db_session, transaction.id) == 1

    def test_confirm_suggestion_keeps_its_scoring(self, db_session, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        suggestion = _suggest(service, transaction, record)

        match = service.confirm_match(transaction.id, record.id, "invoice")

        assert match.id == suggestion.id
        assert match.status == "confirmed"
        assert match.method == "ai_suggested"
        assert match.score == 85
        assert "amount_exact" in match.reasons

    def test_manual_confirm_without_score_is_certain(self, service, make_transaction, make_record):
        match = service.confirm_match(make_transaction().id, make_record().id, "invoice")

        assert match.method == "manual"
        assert match.score == 100
        assert match.confidence == "high"

    def test_concurrent_activation_is_a_conflict(self, db_session, service, make_transaction, make_record, monkeypatch):
        """Another writer activates record B between the pre-check and the upsert"""
        transaction = make_transaction()
        record_a = make_record()
        record_b = make_record(number="INV-0002")
        service.confirm_match(transaction.id, record_b.id, "invoice")
        conflicts_before = REGISTRY.get_sample_value("ledgermatch_match_conflicts_total") or 0.0

        get_match = service.get_match
        calls = []

        def stale_precheck(transaction_id):
            calls.append(transaction_id)
            return None if len(calls) == 1 else get_match(transaction_id)

        monkeypatch.setattr(service, "get_match", stale_precheck)

        with pytest.raises(ConflictError):
            service._activate(
                transaction_id=transaction.id,
                record_id=record_a.id,
                record_type="invoice",
                score=90,
                confidence="high",
                reasons=[],
                method="manual",
                status="confirmed",
                actor_id=None,
            )

        db_session.expire_all()
        match = db_session.query(TransactionMatch).one()
        assert match.record_id == record_b.id
        assert match.status == "confirmed"
        assert db_session.get(BankTransaction, transaction.id).matched_record_id == record_b.id
        assert REGISTRY.get_sample_value("ledgermatch_match_conflicts_total") == conflicts_before + 1

    def test_confirm_unknown_record(self, service, make_transaction):
        with pytest.raises(NotFoundError):
            service.confirm_match(make_transaction().id, uuid4(), "invoice")

    def test_confirm_other_tenant_record(self, service, other_org, make_transaction, make_record):
        foreign = make_record(org_id=other_org.id)

        with pytest.raises(NotFoundError):
            service.confirm_match(make_transaction().id, foreign.id, "invoice")

    def test_learning_failure_does_not_fail_confirm(self, db_session, test_org, config, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        service = MatchService(db_session, test_org.id, config, feedback=UnavailableFeedback())
        failures_before = _learning_failures("MATCH_CONFIRMED")

        match = service.confirm_match(transaction.id, record.id, "invoice")

        db_session.refresh(transaction)
        assert match.status == "confirmed"
        assert transaction.matched is True
        assert _learning_failures("MATCH_CONFIRMED") == failures_before + 1


class TestRejectAndUnmatch:

    def test_reject_active_match_clears_transaction(self, db_session, test_org, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        service.confirm_match(transaction.id, record.id, "invoice")

        match = service.reject_match(transaction.id, reason="wrong invoice")

        db_session.refresh(transaction)
        assert match.status == "rejected"
        assert match.rejection_reason == "wrong invoice"
        assert transaction.matched is False
        assert transaction.matched_record_id is None
        assert PatternStore(db_session).get(test_org.id, FINGERPRINT).is_active is False

    def test_reject_unpersisted_candidate_only_learns(self, db_session, test_org, service, make_pattern, make_transaction, make_record):
        make_pattern("name:acme trading", strength=2.0)
        transaction = make_transaction()
        record = make_record()

        match = service.reject_match(transaction.id, record_id=record.id)

        assert match is None
        assert db_session.query(TransactionMatch).count() == 0
        assert PatternStore(db_session).get(test_org.id, FINGERPRINT).strength == pytest.approx(1.0)

    def test_reject_other_candidate_keeps_suggestion(self, db_session, service, make_transaction, make_record):
        transaction = make_transaction()
        suggested = make_record()
        other = make_record(amount="990.00")
        _suggest(service, transaction, suggested)

        assert service.reject_match(transaction.id, record_id=other.id) is None
        assert service.get_match(transaction.id).status == "suggested"

    def test_reject_without_match_or_record(self, service, make_transaction):
        with pytest.raises(NotFoundError):
            service.reject_match(make_transaction().id)

    def test_unmatch_active_match(self, db_session, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        actor_id = uuid4()
        service.confirm_match(transaction.id, record.id, "invoice")

        match = service.unmatch(transaction.id, actor_id=actor_id)

        db_session.refresh(transaction)
        assert match.status == "unmatched"
        assert match.unmatched_by == actor_id
        assert transaction.matched is False

    def test_unmatch_without_active_match(self, service, make_transaction):
        with pytest.raises(ValidationError):
            service.unmatch(make_transaction().id)

    def test_at_most_one_active_match(self, db_session, service, make_transaction, make_record):
        """Any confirm/reject/unmatch sequence leaves at most one active row"""
        transaction = make_transaction()
        first = make_record()
        second = make_record(number="INV-0002")

        steps = [
            lambda: service.confirm_match(transaction.id, first.id, "invoice"),
            lambda: service.confirm_match(transaction.id, second.id, "invoice"),
            lambda: service.reject_match(transaction.id),
            lambda: service.confirm_match(transaction.id, second.id, "invoice"),
            lambda: service.confirm_match(transaction.id, first.id, "invoice"),
            lambda: service.unmatch(transaction.id),
            lambda: service.confirm_match(transaction.id, first.id, "invoice"),
            lambda: service.unmatch(transaction.id),
            lambda: service.unmatch(transaction.id),
        ]
        for step in steps:
            try:
                step()
            except (ConflictError, ValidationError):
                pass
            assert _active_rows(db_session, transaction.id) <= 1
            assert db_session.query(TransactionMatch).filter(
                TransactionMatch.bank_transaction_id == transaction.id
            ).count() == 1

        db_session.refresh(transaction)
        assert transaction.matched is False


class TestSuggestions:

    def test_suggestion_not_saved_over_active_match(self, db_session, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        other = make_record(amount="995.00")
        service.confirm_match(transaction.id, record.id, "invoice")

        assert _suggest(service, transaction, other) is None
        assert service.get_match(transaction.id).record_id == record.id

    def test_rejected_record_is_not_resuggested(self, service, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        _suggest(service, transaction, record)
        service.reject_match(transaction.id)

        assert _suggest(service, transaction, record) is None
        assert service.get_match(transaction.id).status == "rejected"

    def test_bulk_confirm(self, db_session, service, make_transaction, make_record):
        first = _suggest(service, make_transaction(), make_record())
        second = _suggest(service, make_transaction(amount="500.00"), make_record(amount="500.00"))

        counts = service.bulk_confirm_suggestions([first.id, second.id, uuid4()])

        assert counts == {"confirmed": 2, "conflicts": 0, "missing": 1}
        assert db_session.query(TransactionMatch).filter(TransactionMatch.status == "confirmed").count() == 2

    def test_bulk_confirm_limit(self, service):
        with pytest.raises(ValidationError):
            service.bulk_confirm_suggestions([uuid4() for _ in range(51)])

    def test_pending_suggestions_paginated(self, service, make_transaction, make_record):
        for amount in ("100.00", "200.00", "300.00"):
            _suggest(service, make_transaction(amount=amount), make_record(amount=amount))

        items, total = service.pending_suggestions(page=1, page_size=2)
        rest, _ = service.pending_suggestions(page=2, page_size=2)

        assert total == 3
        assert len(items) == 2
        assert len(rest) == 1
        assert service.pending_suggestions(min_score=99)[1] == 0


class TestFireAndForgetLearning:

    def test_record_confirmation_is_idempotent(self, db_session, test_org, service, make_transaction, make_record):
        context = {
            "transaction_id": make_transaction().id,
            "record_id": make_record().id,
            "record_type": "invoice",
            "score": 85,
        }

        assert service.record_confirmation(context) is True
        once = PatternStore(db_session).get(test_org.id, FINGERPRINT).strength
        assert service.record_confirmation(context) is True

        assert PatternStore(db_session).get(test_org.id, FINGERPRINT).strength == once

    def test_record_confirmation_never_raises(self, service):
        assert service.record_confirmation({"transaction_id": uuid4(), "record_id": uuid4(), "record_type": "invoice"}) is False
        assert service.record_confirmation({}) is False

    def test_record_rejection(self, db_session, test_org, service, make_pattern, make_transaction, make_record):
        make_pattern("name:acme trading", strength=3.0)
        context = {"transaction_id": make_transaction().id, "record_id": make_record().id, "record_type": "invoice"}

        assert service.record_rejection(context) is True
        assert PatternStore(db_session).get(test_org.id, FINGERPRINT).strength == pytest.approx(2.0)


class TestReporting:

    def test_matching_stats(self, service, make_transaction, make_record):
        matched = make_transaction()
        make_transaction(amount="42.00")
        service.confirm_match(matched.id, make_record().id, "invoice", score=90)

        stats = service.matching_stats()

        assert stats["total_transactions"] == 2
        assert stats["matched_transactions"] == 1
        assert stats["unmatched_transactions"] == 1
        assert stats["matches_by_status"] == {"confirmed": 1}
        assert stats["accuracy"] == 1.0
        assert stats["avg_score"] == 90.0
        assert stats["patterns"]["active"] == 1

    def test_matching_stats_empty_tenant(self, service):
        stats = service.matching_stats()

        assert stats["total_transactions"] == 0
        assert stats["auto_match_rate"] == 0.0


class TestMatchingConfig:

    def test_tenant_overrides_are_applied(self, db_session, test_org):
        test_org.settings_json = {"matching": {"auto_threshold": 90, "min_margin": 5}}
        db_session.commit()

        config = get_matching_config(db_session, test_org.id)

        assert config.auto_threshold == 90
        assert config.min_margin == 5
        assert config.suggest_threshold == 50

    def test_invalid_overrides_fall_back_to_defaults(self, db_session, test_org):
        test_org.settings_json = {"matching": {"amount_weight": 90}}
        db_session.commit()

        config = get_matching_config(db_session, test_org.id)

        assert config.amount_weight == 40.0

    def test_unknown_org(self, db_session):
        with pytest.raises(NotFoundError):
            get_matching_config(db_session, uuid4())

    def test_inconsistent_configs_are_rejected(self):
        from pydantic import ValidationError as PydanticValidationError

        with pytest.raises(PydanticValidationError):
            MatchingConfig(amount_weight=50.0)
        with pytest.raises(PydanticValidationError):
            MatchingConfig(suggest_threshold=90, auto_threshold=85)
        with pytest.raises(PydanticValidationError):
            MatchingConfig(amount_tolerance_pct=25.0)
