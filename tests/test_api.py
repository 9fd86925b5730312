"""
Integration tests for the retail ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from retail_ledger.api import BankingSystem, create_app
from retail_ledger.config import LedgerConfig
from retail_ledger.storage import InMemoryStorage


@pytest.fixture
def system():
    """Banking system on in-memory storage with default business rules"""
    return BankingSystem(
        storage=InMemoryStorage(),
        config=LedgerConfig(database_url="memory://", account_number_start=10000)
    )


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def application_payload(application_id="APP-1", national_id="123456789012",
                        mobile_number="9876543210", opening_balance="1500.00", **overrides):
    payload = {
        "application_id": application_id,
        "holder_name": "Asha Rao",
        "date_of_birth": "1990-05-17",
        "national_id": national_id,
        "mobile_number": mobile_number,
        "opening_balance": opening_balance,
        "address": "12 Lake Road, Pune",
        "account_type": "SAVINGS"
    }
    payload.update(overrides)
    return payload


def open_account(client, **kwargs):
    payload = application_payload(**kwargs)
    assert client.post("/applications", json=payload).status_code == 201
    r = client.post(f"/applications/{payload['application_id']}/approve")
    assert r.status_code == 200
    return r.json()["account_number"]


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestApplicationFlow:
    """Onboarding over HTTP"""

    def test_submit_and_get(self, client):
        r = client.post("/applications", json=application_payload())
        assert r.status_code == 201
        assert r.json()["application_id"] == "APP-1"
        assert r.json()["kyc_status"] == "PENDING"

        r = client.get("/applications/APP-1")
        assert r.status_code == 200
        data = r.json()
        assert data["opening_balance"] == "1500.00"
        assert data["account_number"] is None

    def test_approve(self, client):
        client.post("/applications", json=application_payload())

        r = client.post("/applications/APP-1/approve")

        assert r.status_code == 200
        assert r.json()["account_number"] == 10000
        assert client.get("/applications/APP-1").json()["kyc_status"] == "APPROVED"

    def test_approve_twice_returns_same_account(self, client):
        client.post("/applications", json=application_payload())
        first = client.post("/applications/APP-1/approve").json()["account_number"]
        second = client.post("/applications/APP-1/approve").json()["account_number"]

        assert first == second
        assert len(client.get("/accounts").json()["accounts"]) == 1

    def test_reject_then_approve(self, client):
        client.post("/applications", json=application_payload())

        assert client.post("/applications/APP-1/reject").status_code == 200
        r = client.post("/applications/APP-1/approve")

        assert r.status_code == 409
        assert r.json()["error"] == "invalid_state"

    def test_below_minimum_balance(self, client):
        r = client.post("/applications", json=application_payload(opening_balance="999.99"))

        assert r.status_code == 400
        assert r.json()["error"] == "validation_error"

    def test_duplicate_identity(self, client):
        client.post("/applications", json=application_payload())

        r = client.post("/applications", json=application_payload(
            application_id="APP-2", mobile_number="9111111111"
        ))

        assert r.status_code == 409
        assert r.json()["error"] == "duplicate_identity"

    def test_duplicate_application_id(self, client):
        client.post("/applications", json=application_payload())

        r = client.post("/applications", json=application_payload(
            national_id="222222222222", mobile_number="9111111111"
        ))

        assert r.status_code == 409
        assert r.json()["error"] == "duplicate_application"

    def test_unknown_application(self, client):
        r = client.get("/applications/NOPE")
        assert r.status_code == 404
        assert r.json()["error"] == "application_not_found"

        assert client.post("/applications/NOPE/approve").status_code == 404

    def test_list_by_status(self, client):
        client.post("/applications", json=application_payload())
        client.post("/applications", json=application_payload(
            application_id="APP-2", national_id="222222222222", mobile_number="9111111111"
        ))
        client.post("/applications/APP-2/reject")

        r = client.get("/applications", params={"status": "rejected"})

        assert [a["application_id"] for a in r.json()["applications"]] == ["APP-2"]
        assert client.get("/applications", params={"status": "bogus"}).status_code == 400

    def test_malformed_request(self, client):
        payload = application_payload()
        del payload["national_id"]

        assert client.post("/applications", json=payload).status_code == 422


class TestTransactionFlow:
    """Debits, credits and reads over HTTP"""

    def test_credit_and_debit(self, client):
        account_number = open_account(client)

        r = client.post(f"/accounts/{account_number}/transactions",
                        json={"payment_type": "DEBIT", "amount": "500"})
        assert r.status_code == 201
        assert r.json()["balance_after"] == "1000.00"
        assert r.json()["transaction_id"] == 1

        r = client.post(f"/accounts/{account_number}/transactions",
                        json={"payment_type": "CREDIT", "amount": "20.50"})
        assert r.json()["balance_after"] == "1020.50"

        r = client.get(f"/accounts/{account_number}/balance")
        assert r.json() == {"account_number": account_number, "balance": "1020.50"}

    def test_insufficient_funds(self, client):
        account_number = open_account(client)

        r = client.post(f"/accounts/{account_number}/transactions",
                        json={"payment_type": "DEBIT", "amount": "2000"})

        assert r.status_code == 422
        assert r.json()["error"] == "insufficient_funds"
        assert client.get(f"/accounts/{account_number}/balance").json()["balance"] == "1500.00"
        assert client.get(f"/accounts/{account_number}/transactions").json()["transactions"] == []

    @pytest.mark.parametrize("amount", ["-1", "1e27", "10.005"])
    def test_invalid_amount(self, client, amount):
        account_number = open_account(client)

        r = client.post(f"/accounts/{account_number}/transactions",
                        json={"payment_type": "CREDIT", "amount": amount})

        assert r.status_code == 400
        assert r.json()["error"] == "invalid_amount"

    def test_oversized_opening_balance(self, client):
        r = client.post("/applications", json=application_payload(opening_balance="1e27"))

        assert r.status_code == 400
        assert r.json()["error"] == "invalid_amount"

    def test_unknown_account(self, client):
        r = client.post("/accounts/424242/transactions",
                        json={"payment_type": "CREDIT", "amount": "10"})
        assert r.status_code == 404
        assert r.json()["error"] == "account_not_found"

        assert client.get("/accounts/424242").status_code == 404
        assert client.get("/accounts/424242/balance").status_code == 404

    def test_get_account(self, client):
        account_number = open_account(client)

        data = client.get(f"/accounts/{account_number}").json()

        assert data["holder_name"] == "Asha Rao"
        assert data["account_type"] == "SAVINGS"
        assert data["status"] == "ACTIVE"
        assert data["current_balance"] == "1500.00"
        assert data["application_id"] == "APP-1"

    def test_transactions_with_date_filter(self, client):
        account_number = open_account(client)
        for timestamp, amount in (("2024-01-10T10:00:00Z", "1.00"),
                                  ("2024-02-10T10:00:00Z", "2.00"),
                                  ("2024-03-10T10:00:00Z", "3.00")):
            client.post(f"/accounts/{account_number}/transactions",
                        json={"payment_type": "CREDIT", "amount": amount, "timestamp": timestamp})

        r = client.get(f"/accounts/{account_number}/transactions",
                       params={"from_date": "2024-02-01", "to_date": "2024-03-10"})

        assert [t["amount"] for t in r.json()["transactions"]] == ["2.00", "3.00"]

    def test_passbook(self, client):
        account_number = open_account(client)
        client.post(f"/accounts/{account_number}/transactions",
                    json={"payment_type": "CREDIT", "amount": "100",
                          "timestamp": "2024-02-10T10:00:00Z"})

        r = client.get(f"/accounts/{account_number}/passbook", params={"month": 2, "year": 2024})

        assert r.status_code == 200
        assert r.json()["closing_balance"] == "1600.00"
        assert len(r.json()["entries"]) == 1
        assert client.get(f"/accounts/{account_number}/passbook",
                          params={"month": 13, "year": 2024}).status_code == 422


class TestReportsAndAudit:

    def test_top_balances_and_totals(self, client):
        first = open_account(client)
        second = open_account(client, application_id="APP-2", national_id="222222222222",
                              mobile_number="9111111111", opening_balance="2500")
        client.post(f"/accounts/{second}/transactions",
                    json={"payment_type": "CREDIT", "amount": "800"})

        top = client.get("/reports/top-balances", params={"limit": 1}).json()["accounts"]
        assert top == [{
            "account_number": second,
            "holder_name": "Asha Rao",
            "account_type": "SAVINGS",
            "balance": "3300.00"
        }]

        totals = {t["account_number"]: t for t in client.get("/reports/totals").json()["accounts"]}
        assert totals[second]["total_credits"] == "800.00"
        assert totals[first]["transaction_count"] == 0

    def test_audit_verify(self, client):
        open_account(client)

        data = client.get("/audit/verify").json()

        assert data["valid"]
        assert data["total_events"] == 3
