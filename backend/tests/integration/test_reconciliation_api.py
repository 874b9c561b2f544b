"""Integration tests for the reconciliation API.

Tests cover:
- Tenant headers (missing, malformed, unknown organization)
- Match, batch and auto-match endpoints
- Confirm / reject / unmatch lifecycle and conflict mapping
- Suggestions, statistics and pattern endpoints
- Health, readiness and metrics endpoints
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from ledgermatch.models.transaction_match import TransactionMatch

pytestmark = pytest.mark.integration

BASE = "/api/v1/reconciliation"


class TestTenantHeaders:

    def test_missing_org_header(self, client: TestClient):
        response = client.post(f"{BASE}/match", json={"transaction_id": str(uuid4())})

        assert response.status_code == 401

    def test_malformed_org_header(self, client: TestClient):
        response = client.get(f"{BASE}/stats", headers={"X-Org-ID": "not-a-uuid"})

        assert response.status_code == 401

    def test_unknown_org(self, client: TestClient, test_org):
        response = client.get(f"{BASE}/stats", headers={"X-Org-ID": str(uuid4())})

        assert response.status_code == 404

    def test_other_tenant_transaction_is_not_found(self, client, other_org, make_transaction):
        transaction = make_transaction()

        response = client.post(
            f"{BASE}/match",
            json={"transaction_id": str(transaction.id)},
            headers={"X-Org-ID": str(other_org.id)},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestMatchEndpoints:

    def test_find_matches(self, client, org_headers, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()

        response = client.post(f"{BASE}/match", json={"transaction_id": str(transaction.id)}, headers=org_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "auto_match"
        assert data["auto_match_applied"] is False
        assert data["best_match"]["record_id"] == str(record.id)
        assert data["best_match"]["score"] >= 85
        assert data["best_match"]["confidence"] == "high"
        assert data["best_match"]["reasons"][0]["code"] == "amount_exact"
        assert data["candidates_evaluated"] == 1

    def test_find_matches_applies_auto_match(self, client, db_session, org_headers, make_transaction, make_record):
        transaction = make_transaction()
        make_record()
        user_id = uuid4()

        response = client.post(
            f"{BASE}/match",
            json={"transaction_id": str(transaction.id), "options": {"apply_auto_match": True}},
            headers={**org_headers, "X-User-ID": str(user_id)},
        )

        assert response.status_code == 200
        assert response.json()["auto_match_applied"] is True
        assert response.json()["transaction"]["matched"] is True
        match = db_session.query(TransactionMatch).one()
        assert match.status == "auto_confirmed"
        assert match.matched_by == user_id

    def test_unknown_transaction(self, client, org_headers):
        response = client.post(f"{BASE}/match", json={"transaction_id": str(uuid4())}, headers=org_headers)

        assert response.status_code == 404

    def test_invalid_options(self, client, org_headers, make_transaction):
        response = client.post(
            f"{BASE}/match",
            json={"transaction_id": str(make_transaction().id), "options": {"limit": 0}},
            headers=org_headers,
        )

        assert response.status_code == 422

    def test_batch(self, client, org_headers, make_transaction, make_record):
        matched = make_transaction()
        make_record()
        missing_id = uuid4()

        response = client.post(
            f"{BASE}/batch",
            json={"transaction_ids": [str(missing_id), str(matched.id)]},
            headers=org_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["failed"] == 1
        assert data["auto_matched"] == 1
        assert [m["transaction_id"] for m in data["matches"]] == [str(missing_id), str(matched.id)]
        assert data["statistics"]["auto_match_rate"] == 0.5

    def test_batch_over_tenant_limit(self, client, db_session, test_org, org_headers):
        test_org.settings_json = {"matching": {"max_batch_size": 2}}
        db_session.commit()

        response = client.post(
            f"{BASE}/batch",
            json={"transaction_ids": [str(uuid4()) for _ in range(3)]},
            headers=org_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_empty_batch(self, client, org_headers):
        response = client.post(f"{BASE}/batch", json={"transaction_ids": []}, headers=org_headers)

        assert response.status_code == 422

    def test_auto_match(self, client, org_headers, make_transaction, make_record):
        make_transaction()
        make_record()

        response = client.post(f"{BASE}/auto-match", json={}, headers=org_headers)

        assert response.status_code == 200
        assert response.json()["applied"] == 1


class TestLifecycleEndpoints:

    def test_confirm_conflict_unmatch(self, client, org_headers, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        other = make_record(number="INV-0002")

        confirmed = client.post(
            f"{BASE}/confirm",
            json={"transaction_id": str(transaction.id), "record_id": str(record.id), "record_type": "invoice"},
            headers=org_headers,
        )
        conflict = client.post(
            f"{BASE}/confirm",
            json={"transaction_id": str(transaction.id), "record_id": str(other.id), "record_type": "invoice"},
            headers=org_headers,
        )
        unmatched = client.post(f"{BASE}/unmatch", json={"transaction_id": str(transaction.id)}, headers=org_headers)
        again = client.post(f"{BASE}/unmatch", json={"transaction_id": str(transaction.id)}, headers=org_headers)

        assert confirmed.status_code == 200
        assert confirmed.json()["match"]["status"] == "confirmed"
        assert conflict.status_code == 409
        assert conflict.json()["error"] == "conflict"
        assert unmatched.status_code == 200
        assert unmatched.json()["match"]["status"] == "unmatched"
        assert again.status_code == 400

    def test_reject(self, client, org_headers, make_transaction, make_record):
        transaction = make_transaction()
        record = make_record()
        client.post(
            f"{BASE}/confirm",
            json={"transaction_id": str(transaction.id), "record_id": str(record.id), "record_type": "invoice"},
            headers=org_headers,
        )

        response = client.post(
            f"{BASE}/reject",
            json={"transaction_id": str(transaction.id), "reason": "duplicate"},
            headers=org_headers,
        )

        assert response.status_code == 200
        assert response.json()["match"]["status"] == "rejected"

    def test_suggestions_and_bulk_confirm(self, client, org_headers, make_transaction, make_record):
        transaction = make_transaction(amount="3000.00", counterparty_name=None, description=None)
        make_record(amount="3000.00", counterparty_name=None)
        make_record(amount="3000.00", counterparty_name=None, number="INV-0002")
        client.post(
            f"{BASE}/match",
            json={"transaction_id": str(transaction.id), "options": {"save_suggestions": True}},
            headers=org_headers,
        )

        listed = client.get(f"{BASE}/suggestions", headers=org_headers)
        match_id = listed.json()["items"][0]["id"]
        bulk = client.post(f"{BASE}/suggestions/bulk-confirm", json={"match_ids": [match_id]}, headers=org_headers)

        assert listed.status_code == 200
        assert listed.json()["total"] == 1
        assert bulk.status_code == 200
        assert bulk.json() == {"confirmed": 1, "conflicts": 0, "missing": 0}


class TestReportingEndpoints:

    def test_stats(self, client, org_headers, make_transaction):
        make_transaction()

        response = client.get(f"{BASE}/stats", headers=org_headers)

        assert response.status_code == 200
        assert response.json()["total_transactions"] == 1

    def test_patterns(self, client, org_headers, make_pattern):
        make_pattern("name:acme trading", strength=2.0)
        make_pattern("name:globex", strength=1.0)

        listed = client.get(f"{BASE}/patterns", params={"min_strength": 1.5}, headers=org_headers)
        stats = client.get(f"{BASE}/patterns/stats", headers=org_headers)

        assert listed.status_code == 200
        assert [p["counterparty_key"] for p in listed.json()] == ["name:acme trading"]
        assert stats.json()["active"] == 2

    def test_pattern_cleanup(self, client, org_headers, make_pattern):
        make_pattern("name:stale", age_days=90)
        make_pattern("name:fresh")

        response = client.post(
            f"{BASE}/patterns/cleanup",
            json={"max_age_days": 30, "max_patterns": 10},
            headers=org_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": 1, "deactivated": 0, "remaining_active": 1}

    def test_pattern_cleanup_defaults(self, client, org_headers, make_pattern):
        make_pattern("name:ancient", age_days=400)

        response = client.post(f"{BASE}/patterns/cleanup", headers=org_headers)

        assert response.status_code == 200
        assert response.json()["deleted"] == 1


class TestObservabilityEndpoints:

    def test_ready(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "ledgermatch_match_evaluations_total" in response.text

    def test_request_id_is_echoed(self, client):
        response = client.get("/ready", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
