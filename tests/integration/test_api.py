"""Integration tests for API endpoints"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

GROUP = "group-1"


@pytest.fixture
def members(seed):
    """alice is eligible, bob belongs to the group with no savings, admin runs the platform"""
    seed.eligible_member("alice")
    seed.member("bob")
    seed.membership("bob")
    seed.admin()


def apply(client: TestClient, member_id="alice", amount=12000, **extra):
    return client.post("/v1/loans", json={"member_id": member_id, "group_id": GROUP, "amount": amount, **extra})


def disburse(client: TestClient, amount=12000, months=6) -> str:
    loan_id = apply(client, amount=amount).json()["loan_id"]
    client.post(
        f"/v1/loans/{loan_id}/approve",
        json={"actor_id": "admin", "interest_rate": "0", "repayment_period_months": months},
    )
    response = client.post(f"/v1/loans/{loan_id}/disburse", json={"actor_id": "admin"})
    assert response.status_code == 200
    return loan_id


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "lending_loan_transitions_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_eligibility_is_cached(client: TestClient, members):
    """Test GET /v1/eligibility scores once then serves the cached verdict"""
    first = client.get(f"/v1/eligibility/alice/{GROUP}")
    second = client.get(f"/v1/eligibility/alice/{GROUP}")

    assert first.status_code == 200
    data = first.json()
    assert data["is_eligible"] is True
    assert data["max_loan_amount"] == 30000
    assert data["overall_score"] == pytest.approx(71.67, abs=0.01)
    assert data["components"]["participation_score"] == 30.0
    assert data["cached"] is False

    assert second.json()["cached"] is True
    assert second.json()["assessment_id"] == data["assessment_id"]


def test_eligibility_of_other_member_is_forbidden(client: TestClient, members):
    response = client.get(f"/v1/eligibility/alice/{GROUP}", params={"actor_id": "bob"})

    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_override_eligibility(client: TestClient, members):
    """Test POST /v1/eligibility/override grants a loan ceiling"""
    response = client.post(
        "/v1/eligibility/override",
        json={"member_id": "bob", "group_id": GROUP, "is_eligible": False, "actor_id": "admin", "notes": "KYC"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["is_eligible"] is False
    assert data["overridden_by"] == "admin"
    assert data["notes"] == "KYC"


def test_apply_and_replay(client: TestClient, members):
    """Test POST /v1/loans creates once and replays on the same idempotency key"""
    first = apply(client, reason="school fees", idempotency_key="abc")
    replay = apply(client, reason="school fees", idempotency_key="abc")

    assert first.status_code == 201
    assert first.json()["status"] == "pending"
    assert first.json()["duplicate"] is False
    assert replay.status_code == 200
    assert replay.json()["duplicate"] is True
    assert replay.json()["loan_id"] == first.json()["loan_id"]


def test_apply_ineligible(client: TestClient, members):
    """Test POST /v1/loans for a member without savings history"""
    response = apply(client, member_id="bob", amount=5000)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "ineligible"
    assert body["details"]["reason"] == "insufficient_group_membership"


def test_apply_above_ceiling_conflicts(client: TestClient, members):
    response = apply(client, amount=30001)

    assert response.status_code == 409
    assert response.json()["details"]["max_loan_amount"] == 30000


def test_apply_missing_field(client: TestClient):
    response = client.post("/v1/loans", json={"member_id": "alice", "group_id": GROUP})
    assert response.status_code == 422


def test_apply_invalid_amount(client: TestClient, members):
    response = apply(client, amount=-10)

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"
    assert response.json()["details"]["field"] == "amount"


def test_unknown_loan(client: TestClient):
    assert client.get("/v1/loans/not-a-uuid").status_code == 404
    response = client.get("/v1/loans/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_member_cannot_approve(client: TestClient, members):
    loan_id = apply(client).json()["loan_id"]

    response = client.post(
        f"/v1/loans/{loan_id}/approve",
        json={"actor_id": "alice", "interest_rate": "10", "repayment_period_months": 6},
    )

    assert response.status_code == 403
    assert client.get(f"/v1/loans/{loan_id}").json()["status"] == "pending"


def test_reject_loan(client: TestClient, members):
    loan_id = apply(client).json()["loan_id"]

    response = client.post(f"/v1/loans/{loan_id}/reject", json={"actor_id": "admin", "reason": "fund depleted"})

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert response.json()["rejection_reason"] == "fund depleted"


def test_disburse_pending_loan_conflicts(client: TestClient, members):
    loan_id = apply(client).json()["loan_id"]

    response = client.post(f"/v1/loans/{loan_id}/disburse", json={"actor_id": "admin"})

    assert response.status_code == 409
    assert response.json()["details"]["current_status"] == "pending"


def test_full_repayment_flow(client: TestClient, members):
    """Test apply, approve, disburse and repay through the HTTP API"""
    loan_id = apply(client).json()["loan_id"]

    approved = client.post(
        f"/v1/loans/{loan_id}/approve",
        json={"actor_id": "admin", "interest_rate": "12", "repayment_period_months": 6},
    )
    assert approved.status_code == 200
    assert approved.json()["interest_rate"] == 12.0
    assert approved.json()["approved_by"] == "admin"

    disbursed = client.post(f"/v1/loans/{loan_id}/disburse", json={"actor_id": "admin"})
    assert disbursed.status_code == 200
    schedule = disbursed.json()["schedule"]
    # 12% flat over six months on 12,000 is 720 interest
    assert schedule["total_interest"] == 720
    assert schedule["total_amount"] == 12720
    assert [i["total_amount"] for i in schedule["installments"]] == [2120] * 6
    assert schedule["installments"][0]["due_date"] == "2026-07-15"

    partial = client.post(
        f"/v1/loans/{loan_id}/payments",
        json={"actor_id": "alice", "amount": 3000, "method": "mobile_money", "reference": "tx-1"},
    )
    assert partial.status_code == 200
    assert [p["installment_number"] for p in partial.json()["payments"]] == [1, 2]

    summary = client.get(f"/v1/loans/{loan_id}/schedule").json()["summary"]
    assert summary["total_paid"] == 3000
    assert summary["outstanding_amount"] == 9720
    assert summary["installments_paid"] == 1
    assert summary["next_due_date"] == "2026-08-15"

    final = client.post(
        f"/v1/loans/{loan_id}/payments",
        json={"actor_id": "alice", "amount": 9720, "method": "mobile_money", "reference": "tx-2"},
    )
    assert final.status_code == 200
    assert final.json()["loan"]["status"] == "repaid"
    assert final.json()["schedule"]["status"] == "completed"
    assert final.json()["schedule"]["summary"]["payment_percentage"] == 100


def test_duplicate_payment_reference(client: TestClient, members):
    loan_id = disburse(client)
    body = {"actor_id": "alice", "amount": 2000, "method": "cash", "reference": "tx-1"}

    client.post(f"/v1/loans/{loan_id}/payments", json=body)
    replay = client.post(f"/v1/loans/{loan_id}/payments", json=body)

    assert replay.status_code == 200
    assert replay.json()["duplicate"] is True
    assert replay.json()["schedule"]["total_paid"] == 2000


def test_penalties_forgiveness_and_default(client: TestClient, members, clock):
    """Test late fee accrual, waiver and default through the HTTP API"""
    loan_id = disburse(client)
    clock.now = datetime(2026, 7, 25, 12, 0, tzinfo=timezone.utc)

    penalty = client.post(f"/v1/loans/{loan_id}/penalties", json={"actor_id": "admin"})
    assert penalty.status_code == 200
    assert penalty.json()["amount"] == 40
    assert penalty.json()["schedule"]["installments"][0]["status"] == "overdue"

    forbidden = client.post(f"/v1/loans/{loan_id}/penalties", json={"actor_id": "alice"})
    assert forbidden.status_code == 403

    defaulted = client.post(f"/v1/loans/{loan_id}/default", json={"actor_id": "admin", "reason": "absconded"})
    assert defaulted.status_code == 200
    assert defaulted.json()["loan"]["status"] == "defaulted"
    assert defaulted.json()["schedule"]["status"] == "defaulted"

    forgiven = client.post(
        f"/v1/loans/{loan_id}/penalties/forgive", json={"actor_id": "admin", "installment_number": 1}
    )
    assert forgiven.status_code == 200
    assert forgiven.json()["amount"] == 40
    assert forgiven.json()["schedule"]["total_penalties"] == 0

    late_payment = client.post(
        f"/v1/loans/{loan_id}/payments", json={"actor_id": "alice", "amount": 1000, "method": "cash"}
    )
    assert late_payment.status_code == 409


def test_member_loans_listing(client: TestClient, members):
    loan_id = apply(client).json()["loan_id"]

    response = client.get("/v1/members/alice/loans", params={"group_id": GROUP})

    assert response.status_code == 200
    assert [ln["loan_id"] for ln in response.json()["loans"]] == [loan_id]
    assert client.get("/v1/members/alice/loans", params={"group_id": "other"}).json()["loans"] == []


def test_audit_endpoint(client: TestClient, members):
    """Test GET /v1/audit returns successes and failed attempts in order"""
    loan_id = apply(client).json()["loan_id"]
    client.post(f"/v1/loans/{loan_id}/disburse", json={"actor_id": "admin"})

    response = client.get("/v1/audit", params={"loan_id": loan_id})

    assert response.status_code == 200
    entries = response.json()["entries"]
    assert [(e["action"], e["status"]) for e in entries] == [
        ("loan_applied", "success"),
        ("loan_disbursed", "failed"),
    ]
    assert entries[1]["error_code"] == "conflict"
    assert entries[1]["actor_role"] == "admin"


def test_audit_limit_is_bounded(client: TestClient):
    assert client.get("/v1/audit", params={"limit": 0}).status_code == 422
    assert client.get("/v1/audit", params={"limit": 1001}).status_code == 422
