"""
Integration tests for the Microlend HTTP API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from microlend.api import create_app
from microlend.directory import StaticAdminDirectory
from microlend.system import LendingSystem


def lkr(amount: str) -> dict:
    return {"amount": amount, "currency": "LKR"}


@pytest.fixture
def api_system(config, storage, clock):
    system = LendingSystem(config=config, storage=storage, clock=clock,
                           admin_directory=StaticAdminDirectory(["admin-1"]))
    yield system
    system.close()


@pytest.fixture
def client(api_system):
    """Create a test client around an in-memory lending system"""
    return TestClient(create_app(api_system))


@pytest.fixture
def loan_id(client):
    r = client.post("/loans", json={
        "borrower_id": "borrower-1",
        "requested_amount": lkr("100000"),
        "annual_interest_rate": "12",
        "term_months": 6,
        "purpose": "Tuk-tuk repairs",
    })
    assert r.status_code == 201
    return r.json()["id"]


@pytest.fixture
def funded(client, loan_id):
    client.post("/wallets/lender-1/topup", json={"amount": lkr("150000")})
    r = client.post(f"/loans/{loan_id}/fund", json={
        "lender_id": "lender-1",
        "borrower_id": "borrower-1",
        "amount": lkr("100000"),
    })
    assert r.status_code == 200
    return r.json()


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestWalletEndpoints:
    """Top-up, withdrawal and history"""

    def test_topup_and_withdraw(self, client, api_system):
        r = client.post("/wallets/lender-1/topup", json={"amount": lkr("5000")})
        assert r.status_code == 200
        assert r.json()["balance"] == lkr("5000.00")

        api_system.clock.advance(minutes=1)
        r = client.post("/wallets/lender-1/withdraw", json={"amount": lkr("1200.50")})
        assert r.json()["balance"] == lkr("3799.50")

        r = client.get("/wallets/lender-1")
        assert r.json()["balance"] == lkr("3799.50")

        r = client.get("/wallets/lender-1/transactions")
        assert [t["type"] for t in r.json()["transactions"]] == ["withdraw", "topup"]

    def test_overdraw_is_payment_required(self, client):
        client.post("/wallets/lender-1/topup", json={"amount": lkr("100")})

        r = client.post("/wallets/lender-1/withdraw", json={"amount": lkr("500")})

        assert r.status_code == 402
        assert r.json()["error"] == "insufficient_funds"

    def test_unknown_wallet(self, client):
        r = client.get("/wallets/nobody")
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"

    @pytest.mark.parametrize("amount", [
        {"amount": "abc", "currency": "LKR"},
        {"amount": "10", "currency": "XYZ"},
        {"amount": "-10", "currency": "LKR"},
    ])
    def test_bad_amounts(self, client, amount):
        r = client.post("/wallets/lender-1/topup", json={"amount": amount})
        assert r.status_code == 400
        assert r.json()["error"] == "validation_error"


class TestLoanFlow:
    """End-to-end funding and repayment"""

    def test_apply_and_read(self, client, loan_id):
        r = client.get(f"/loans/{loan_id}")
        assert r.status_code == 200
        assert r.json()["status"] == "pending"
        assert r.json()["requested_amount"] == lkr("100000.00")

        r = client.get("/loans", params={"status": "pending"})
        assert [l["id"] for l in r.json()["loans"]] == [loan_id]

    def test_unknown_status_filter(self, client):
        r = client.get("/loans", params={"status": "sleeping"})
        assert r.status_code == 400

    def test_fund(self, client, loan_id, funded):
        assert funded["success"]
        assert funded["message"] == "Loan funded successfully! Awaiting admin approval."
        assert funded["new_wallet_balance"] == lkr("50000.00")

        assert client.get(f"/loans/{loan_id}").json()["status"] == "funding"

        r = client.get("/escrows", params={"status": "pending"})
        assert [e["id"] for e in r.json()["escrows"]] == [funded["escrow_id"]]

        r = client.get("/users/admin-1/notifications")
        assert r.json()["unread_count"] == 1
        assert r.json()["notifications"][0]["type"] == "escrow_pending_approval"

    def test_insufficient_funds(self, client, loan_id):
        client.post("/wallets/lender-1/topup", json={"amount": lkr("5000")})

        r = client.post(f"/loans/{loan_id}/fund", json={
            "lender_id": "lender-1", "borrower_id": "borrower-1", "amount": lkr("10000"),
        })

        assert r.status_code == 402
        assert client.get("/wallets/lender-1").json()["balance"] == lkr("5000.00")
        assert client.get("/escrows").json()["escrows"] == []

    def test_release_and_repay(self, client, loan_id, funded):
        escrow_id = funded["escrow_id"]
        schedule_id = funded["repayment_schedule_id"]

        assert client.post(f"/escrows/{escrow_id}/approve").json()["escrow"]["status"] == "approved"
        r = client.post(f"/escrows/{escrow_id}/release")
        assert r.json()["loan"]["status"] == "repaying"
        assert client.get("/wallets/borrower-1").json()["balance"] == lkr("100000.00")

        r = client.get(f"/schedules/{schedule_id}")
        assert len(r.json()["installments"]) == 6
        assert r.json()["installments"][0]["display_status"] == "Pending"

        for number in range(1, 7):
            r = client.post(f"/schedules/{schedule_id}/installments/{number}/pay")
            assert r.status_code == 200

        assert r.json()["loan_completed"]
        assert r.json()["total_return"] == lkr("103529.04")
        assert r.json()["interest_earned"] == lkr("3529.04")
        assert client.get(f"/loans/{loan_id}").json()["status"] == "completed"

        r = client.post(f"/schedules/{schedule_id}/installments/6/pay")
        assert r.json()["already_paid"]

        portfolio = client.get("/lenders/lender-1/portfolio").json()
        assert portfolio["roi"] == "3.53"

    def test_double_release_is_conflict(self, client, funded):
        client.post(f"/escrows/{funded['escrow_id']}/release")

        r = client.post(f"/escrows/{funded['escrow_id']}/release")

        assert r.status_code == 409
        assert r.json()["error"] == "invalid_state"

    def test_refund(self, client, loan_id, funded):
        r = client.post(f"/escrows/{funded['escrow_id']}/refund")

        assert r.json()["escrow"]["status"] == "refunded"
        assert r.json()["loan"]["status"] == "pending"
        assert client.get("/wallets/lender-1").json()["balance"] == lkr("150000.00")


class TestAdminEndpoints:
    """Repayment overview and reminders"""

    def test_overview_and_reminders(self, client, api_system, funded):
        client.post(f"/escrows/{funded['escrow_id']}/release")
        api_system.clock.advance(days=40)

        overview = client.get("/admin/repayments/overview").json()
        assert [i["installment_number"] for i in overview["overdue"]] == [1]
        assert overview["overdue"][0]["display_status"] == "Overdue"

        r = client.post("/admin/repayments/reminders")
        assert r.json()["reminders_sent"] == 1

        notices = client.get("/users/borrower-1/notifications", params={"unread_only": True}).json()
        reminder = [n for n in notices["notifications"] if n["type"] == "payment_reminder"][0]

        r = client.post(f"/notifications/{reminder['id']}/read")
        assert r.json()["is_read"]

    def test_unknown_notification(self, client):
        assert client.post("/notifications/missing/read").status_code == 404
