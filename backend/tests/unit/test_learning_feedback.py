"""Unit tests for the learning feedback loop.

Tests cover:
- Pattern creation at baseline and diminishing-returns reinforcement
- Idempotent confirmations (no double counting)
- Rejection weakening and deactivation at zero
- Storage failures surfacing as LearningUpdateError
"""

import pytest
from sqlalchemy.exc import OperationalError

from ledgermatch.learning.feedback import LearningFeedback, EVENT_MATCH_CONFIRMED, EVENT_MATCH_REJECTED
from ledgermatch.learning.pattern_store import PatternStore
from ledgermatch.matching.candidate_source import snapshot_transaction
from ledgermatch.matching.ports import LearningUpdateError
from ledgermatch.models.feedback_event import MatchFeedbackEvent
from ledgermatch.models.matching_pattern import MatchingPattern

FINGERPRINT = "name:acme trading|invoice"


@pytest.fixture
def feedback(db_session, config) -> LearningFeedback:
    return LearningFeedback(db_session, config)


def _strength(db_session, org_id) -> float:
    pattern = PatternStore(db_session).get(org_id, FINGERPRINT)
    return pattern.strength if pattern else 0.0


class TestConfirmation:

    def test_first_confirmation_creates_pattern_at_baseline(self, db_session, test_org, feedback, make_transaction, make_record):
        transaction = snapshot_transaction(make_transaction())
        record = make_record()

        delta = feedback.on_confirmation(transaction, record.id, "invoice", score=85, reasons=["amount_exact"])

        pattern = PatternStore(db_session).get(test_org.id, FINGERPRINT)
        assert delta == 1.0
        assert pattern.strength == 1.0
        assert pattern.confirmations == 1
        assert pattern.is_active is True
        event = db_session.query(MatchFeedbackEvent).one()
        assert event.event_type == EVENT_MATCH_CONFIRMED
        assert event.meta_json["score"] == 85

    def test_duplicate_confirmation_is_not_double_counted(self, db_session, test_org, feedback, make_transaction, make_record):
        transaction = snapshot_transaction(make_transaction())
        record = make_record()

        feedback.on_confirmation(transaction, record.id, "invoice")
        once = _strength(db_session, test_org.id)
        delta = feedback.on_confirmation(transaction, record.id, "invoice")

        assert delta == 0.0
        assert _strength(db_session, test_org.id) == once
        assert db_session.query(MatchFeedbackEvent).count() == 1

    def test_repeat_confirmations_have_diminishing_returns(self, db_session, test_org, feedback, make_transaction, make_record):
        record = make_record()
        deltas = [
            feedback.on_confirmation(snapshot_transaction(make_transaction()), record.id, "invoice")
            for _ in range(4)
        ]

        assert deltas[0] == 1.0
        assert deltas[1] == pytest.approx(0.5)
        assert deltas[1] > deltas[2] > deltas[3] > 0
        assert _strength(db_session, test_org.id) == pytest.approx(sum(deltas))

    def test_no_counterparty_signal_skips_learning(self, db_session, feedback, make_transaction, make_record):
        transaction = snapshot_transaction(make_transaction(counterparty_name=None, description=None))
        record = make_record()

        assert feedback.on_confirmation(transaction, record.id, "invoice") == 0.0
        assert db_session.query(MatchFeedbackEvent).count() == 0

    def test_description_alone_does_not_learn(self, db_session, feedback, make_transaction, make_record):
        """Bank text shared by unrelated payers never becomes a pattern"""
        transaction = snapshot_transaction(make_transaction(counterparty_name=None, description="Incoming wire"))

        assert feedback.on_confirmation(transaction, make_record().id, "invoice") == 0.0
        assert db_session.query(MatchingPattern).count() == 0
        assert db_session.query(MatchFeedbackEvent).count() == 0

    def test_inactive_pattern_is_reactivated_at_baseline(self, db_session, test_org, feedback, make_pattern, make_transaction, make_record):
        make_pattern("name:acme trading", strength=0.0, is_active=False)
        transaction = snapshot_transaction(make_transaction())

        feedback.on_confirmation(transaction, make_record().id, "invoice")

        pattern = PatternStore(db_session).get(test_org.id, FINGERPRINT)
        assert pattern.is_active is True
        assert pattern.strength == 1.0

    def test_storage_failure_raises_learning_error(self, feedback, make_transaction, make_record, monkeypatch):
        def unavailable(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is down"))

        monkeypatch.setattr(feedback.store, "get", unavailable)

        with pytest.raises(LearningUpdateError):
            feedback.on_confirmation(snapshot_transaction(make_transaction()), make_record().id, "invoice")


class TestRejection:

    def test_rejection_lowers_strength(self, db_session, test_org, feedback, make_pattern, make_transaction, make_record):
        """Rejecting a candidate strictly lowers its pattern strength"""
        make_pattern("name:acme trading", strength=1.5)
        transaction = snapshot_transaction(make_transaction())

        delta = feedback.on_rejection(transaction, make_record().id, "invoice", reason="wrong client")

        pattern = PatternStore(db_session).get(test_org.id, FINGERPRINT)
        assert delta == pytest.approx(-1.0)
        assert pattern.strength == pytest.approx(0.5)
        assert pattern.rejections == 1
        assert pattern.is_active is True

    def test_rejection_to_zero_deactivates(self, db_session, test_org, feedback, make_pattern, make_transaction, make_record):
        """A pattern reaching zero strength drops out of active patterns"""
        make_pattern("name:acme trading", strength=0.5)
        transaction = snapshot_transaction(make_transaction())

        feedback.on_rejection(transaction, make_record().id, "invoice")

        pattern = PatternStore(db_session).get(test_org.id, FINGERPRINT)
        assert pattern.strength == 0.0
        assert pattern.is_active is False
        assert PatternStore(db_session).active_patterns(test_org.id) == []
        assert FINGERPRINT not in PatternStore(db_session).snapshot(test_org.id)

    def test_rejection_without_pattern_is_recorded(self, db_session, feedback, make_transaction, make_record):
        transaction = snapshot_transaction(make_transaction())

        delta = feedback.on_rejection(transaction, make_record().id, "invoice")

        assert delta == 0.0
        event = db_session.query(MatchFeedbackEvent).one()
        assert event.event_type == EVENT_MATCH_REJECTED

    def test_duplicate_rejection_is_ignored(self, db_session, test_org, feedback, make_pattern, make_transaction, make_record):
        make_pattern("name:acme trading", strength=3.0)
        transaction = snapshot_transaction(make_transaction())
        record = make_record()

        feedback.on_rejection(transaction, record.id, "invoice")
        feedback.on_rejection(transaction, record.id, "invoice")

        assert _strength(db_session, test_org.id) == pytest.approx(2.0)
