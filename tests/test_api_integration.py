"""
Integration tests for the SFD Lending API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import date, timedelta
from fastapi.testclient import TestClient

from sfd_lending.api import app, status_code_for
from sfd_lending.api.system import LendingSystem, get_lending_system
from sfd_lending.config import LendingConfig
from sfd_lending.storage import InMemoryStorage
from sfd_lending.exceptions import (
    ConcurrentUpdateError, InsufficientSubsidyError, LoanNotActiveError, NotFoundError,
    PlanInactiveError, SFDLendingError, ValidationError
)


@pytest.fixture
def system():
    return LendingSystem(LendingConfig(use_in_memory_storage=True), storage=InMemoryStorage())


@pytest.fixture
def client(system):
    """Test client wired to a fresh in-memory lending system"""
    app.dependency_overrides[get_lending_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_loan(client, **overrides):
    body = {
        "client_id": "client-1",
        "sfd_id": "sfd-1",
        "amount": "1000000",
        "duration_months": 12,
        "interest_rate": "5.5",
        "purpose": "Stock purchase",
        "subsidy_amount": "50000"
    }
    body.update(overrides)
    r = client.post("/loans", json=body)
    assert r.status_code == 201, r.text
    return r.json()


def fund_sfd(client, amount, sfd_id="sfd-1"):
    r = client.post("/subsidies/requests", json={
        "sfd_id": sfd_id, "amount": amount, "purpose": "Rural credit", "priority": "high"
    })
    assert r.status_code == 201
    request_id = r.json()["id"]
    r = client.post(f"/subsidies/requests/{request_id}/decide", json={
        "actor_id": "meref-1", "status": "approved", "comments": "OK"
    })
    assert r.status_code == 200
    return r.json()


class TestHealthEndpoints:
    """Test basic health endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["service"] == "sfd_lending_api"


class TestPlanFlow:
    """Loan plan management"""

    def test_create_update_deactivate(self, client):
        r = client.post("/plans", json={
            "sfd_id": "sfd-1", "name": "Commerce", "min_amount": "50000",
            "max_amount": "2000000", "min_duration": 3, "max_duration": 24,
            "interest_rate": "5.5"
        })
        assert r.status_code == 201
        plan_id = r.json()["id"]

        r = client.patch(f"/plans/{plan_id}", json={"actor_id": "admin", "max_amount": "3000000"})
        assert r.status_code == 200
        assert r.json()["version"] == 2
        assert r.json()["max_amount"] == "3000000"

        r = client.post(f"/plans/{plan_id}/deactivate", json={"actor_id": "admin"})
        assert r.json()["is_active"] is False

        r = client.post("/loans", json={
            "client_id": "client-1", "sfd_id": "sfd-1", "amount": "100000",
            "duration_months": 6, "plan_id": plan_id
        })
        assert r.status_code == 409
        assert r.json()["error"] == "PlanInactiveError"

    def test_invalid_plan_is_422(self, client):
        r = client.post("/plans", json={
            "sfd_id": "sfd-1", "name": "Bad", "min_amount": "500000",
            "max_amount": "100000", "min_duration": 3, "max_duration": 24,
            "interest_rate": "5"
        })
        assert r.status_code == 422
        assert r.json()["error"] == "ValidationError"

    def test_unknown_plan_is_404(self, client):
        r = client.get("/plans/missing")
        assert r.status_code == 404


class TestLoanFlow:
    """End-to-end loan lifecycle"""

    def test_full_lifecycle(self, client):
        """Fund, request, approve, disburse and repay a loan"""
        fund_sfd(client, "100000")
        loan = create_loan(client, amount="100000", interest_rate="12", subsidy_amount="20000")
        assert loan["status"] == "pending"
        assert loan["monthly_payment"] == "8885"
        assert loan["total_repayment"] == "106620"

        r = client.post(f"/loans/{loan['id']}/approve", json={"approver_id": "manager-1"})
        assert r.status_code == 200
        assert r.json()["status"] == "approved"

        r = client.post(f"/loans/{loan['id']}/disburse",
                        json={"disburser_id": "cashier-1", "idempotency_key": "d-1"})
        assert r.status_code == 200
        assert r.json()["status"] == "active"

        r = client.get("/subsidies/allocations/sfd-1")
        assert r.json()["used_amount"] == "20000"
        assert r.json()["remaining_amount"] == "80000"

        r = client.get(f"/loans/{loan['id']}/schedule")
        assert len(r.json()["schedule"]) == 12

        r = client.post(f"/loans/{loan['id']}/payments", json={
            "amount": "106620", "method": "mobile_money", "reference": "OM-1"
        })
        assert r.status_code == 201
        assert r.json()["loan_status"] == "completed"
        assert r.json()["outstanding_amount"] == "0"

        r = client.get(f"/loans/{loan['id']}/payments")
        assert len(r.json()["payments"]) == 1

        r = client.get(f"/activity/{loan['id']}")
        types = [e["activity_type"] for e in r.json()["entries"]]
        assert types[0] == "loan_created"
        assert types[-1] == "loan_completed"

        r = client.get("/activity/integrity")
        assert r.json()["valid"] is True

    def test_disbursement_without_enough_subsidy(self, client):
        fund_sfd(client, "30000")
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/approve", json={"approver_id": "manager-1"})

        r = client.post(f"/loans/{loan['id']}/disburse", json={"disburser_id": "cashier-1"})

        assert r.status_code == 409
        assert r.json()["error"] == "InsufficientSubsidyError"
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "approved"
        assert client.get("/subsidies/allocations/sfd-1").json()["used_amount"] == "0"

    def test_disburse_pending_loan_is_409(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/disburse", json={"disburser_id": "cashier-1"})

        assert r.status_code == 409
        assert r.json()["error"] == "InvalidTransitionError"

    def test_reject(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/reject",
                        json={"actor_id": "manager-1", "reason": "Missing documents"})

        assert r.json()["status"] == "rejected"
        assert r.json()["rejection_reason"] == "Missing documents"

    def test_payment_on_pending_loan(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "1000", "method": "cash"})

        assert r.status_code == 409
        assert r.json()["error"] == "LoanNotActiveError"

    def test_invalid_payment_amount(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "-5", "method": "cash"})

        assert r.status_code == 422
        assert r.json()["error"] == "InvalidAmountError"

    def test_list_loans_requires_filter(self, client):
        create_loan(client)

        assert client.get("/loans").status_code == 422
        assert len(client.get("/loans", params={"sfd_id": "sfd-1"}).json()["loans"]) == 1
        assert len(client.get("/loans", params={"loan_status": "pending"}).json()["loans"]) == 1
        assert client.get("/loans", params={"loan_status": "bogus"}).status_code == 422

    def test_unknown_loan(self, client):
        r = client.get("/loans/missing")
        assert r.status_code == 404
        assert r.json()["error"] == "NotFoundError"

    def test_process_overdue(self, client, system):
        fund_sfd(client, "100000")
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/approve", json={"approver_id": "manager-1"})
        client.post(f"/loans/{loan['id']}/disburse", json={"disburser_id": "cashier-1"})
        record = system.loans.require(loan["id"])
        record.next_payment_date = date.today() - timedelta(days=31)
        system.loans.save(record)

        r = client.post("/loans/process-overdue")

        assert r.json() == {"checked": 1, "defaulted": 1, "errors": 0}
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "defaulted"

    def test_future_as_of_is_rejected(self, client):
        fund_sfd(client, "100000")
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/approve", json={"approver_id": "manager-1"})
        client.post(f"/loans/{loan['id']}/disburse", json={"disburser_id": "cashier-1"})

        r = client.post("/loans/process-overdue", params={"as_of": "2100-01-01"})
        assert r.status_code == 422

        r = client.post(f"/loans/{loan['id']}/default",
                        json={"actor_id": "collector-1", "as_of": "2100-01-01"})
        assert r.status_code == 422
        assert r.json()["error"] == "ValidationError"

        r = client.post(f"/loans/{loan['id']}/default", json={"actor_id": "collector-1"})
        assert r.status_code == 409
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "active"

    @pytest.mark.parametrize("amount", ["1e6", "12abc", "5 000 FCFA x"])
    def test_malformed_amount_is_422(self, client, amount):
        r = client.post("/loans", json={
            "client_id": "client-1", "sfd_id": "sfd-1", "amount": amount,
            "duration_months": 12, "interest_rate": "5.5"
        })

        assert r.status_code == 422
        assert r.json()["error"] == "ValidationError"
        assert client.get("/loans", params={"sfd_id": "sfd-1"}).json()["loans"] == []

    def test_overpayment_is_422(self, client):
        fund_sfd(client, "100000")
        loan = create_loan(client, amount="100000", interest_rate="12", subsidy_amount="0")
        client.post(f"/loans/{loan['id']}/approve", json={"approver_id": "manager-1"})
        client.post(f"/loans/{loan['id']}/disburse", json={"disburser_id": "cashier-1"})

        r = client.post(f"/loans/{loan['id']}/payments",
                        json={"amount": "50000000", "method": "cash"})

        assert r.status_code == 422
        assert r.json()["error"] == "InvalidAmountError"

    def test_late_payment_penalty(self, client, system):
        fund_sfd(client, "100000")
        loan = create_loan(client, amount="100000", interest_rate="12", subsidy_amount="0")
        client.post(f"/loans/{loan['id']}/approve", json={"approver_id": "manager-1"})
        client.post(f"/loans/{loan['id']}/disburse", json={"disburser_id": "cashier-1"})
        record = system.loans.require(loan["id"])
        record.next_payment_date = date.today() - timedelta(days=10)
        system.loans.save(record)

        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "8885", "method": "cash"})

        assert r.status_code == 201
        assert r.json()["penalty_applied"] == "444"
        assert r.json()["outstanding_amount"] == "98179"

        penalties = client.get(f"/loans/{loan['id']}/penalties").json()["penalties"]
        assert len(penalties) == 1
        assert penalties[0]["days_overdue"] == 10

    def test_payment_reminders(self, client, system):
        fund_sfd(client, "100000")
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/approve", json={"approver_id": "manager-1"})
        client.post(f"/loans/{loan['id']}/disburse", json={"disburser_id": "cashier-1"})
        record = system.loans.require(loan["id"])
        record.next_payment_date = date.today() + timedelta(days=2)
        system.loans.save(record)

        r = client.post("/loans/process-reminders")
        assert r.json() == {"checked": 1, "sent": 1, "skipped": 0, "failed": 0}

        r = client.post("/loans/process-reminders")
        assert r.json()["sent"] == 0
        assert r.json()["skipped"] == 1


class TestSubsidyFlow:
    """Subsidy requests, pools and alerts"""

    def test_reject_requires_comments(self, client):
        r = client.post("/subsidies/requests", json={
            "sfd_id": "sfd-1", "amount": "100000", "purpose": "Rural credit"
        })
        request_id = r.json()["id"]

        r = client.post(f"/subsidies/requests/{request_id}/decide",
                        json={"actor_id": "meref-1", "status": "rejected"})

        assert r.status_code == 422

    def test_queue_and_review(self, client):
        r = client.post("/subsidies/requests", json={
            "sfd_id": "sfd-1", "amount": "100000", "purpose": "Rural credit", "region": "Kolda"
        })
        request_id = r.json()["id"]

        r = client.post(f"/subsidies/requests/{request_id}/review", json={"actor_id": "meref-1"})
        assert r.json()["status"] == "under_review"

        queue = client.get("/subsidies/requests/queue", params={"region": "Kolda"}).json()["requests"]
        assert [q["id"] for q in queue] == [request_id]

    def test_unfunded_sfd_has_no_allocation(self, client):
        assert client.get("/subsidies/allocations/sfd-9").status_code == 404

    def test_alert_thresholds(self, client):
        r = client.post("/subsidies/alerts", json={
            "threshold_name": "Low", "threshold_amount": "50000", "sfd_id": "sfd-1"
        })
        assert r.status_code == 201

        thresholds = client.get("/subsidies/alerts", params={"sfd_id": "sfd-1"}).json()["thresholds"]
        assert [t["threshold_name"] for t in thresholds] == ["Low"]

    def test_notifications_are_listed(self, client):
        fund_sfd(client, "100000")

        r = client.get("/activity/notifications", params={"recipient_id": "sfd-1"})

        notifications = r.json()["notifications"]
        assert len(notifications) == 1
        assert notifications[0]["notification_type"] == "subsidy_request_decided"


class TestErrorMapping:
    """Domain errors to HTTP status codes"""

    @pytest.mark.parametrize("error,status_code", [
        (NotFoundError("x"), 404),
        (ValidationError("x"), 422),
        (PlanInactiveError("x"), 409),
        (LoanNotActiveError("x"), 409),
        (InsufficientSubsidyError("x"), 409),
        (ConcurrentUpdateError("x"), 503),
        (SFDLendingError("x"), 400),
    ])
    def test_status_codes(self, error, status_code):
        assert status_code_for(error) == status_code
