from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import balance_of
from keyswallet.exceptions import (
    AccountsNotFoundError,
    ConcurrencyError,
    InsufficientFundsError,
    InvalidAccountsError,
    StorageError,
)
from keyswallet.security import AuthManager
from keyswallet.webapp import create_app, status_for


@pytest.fixture
def auth() -> AuthManager:
    return AuthManager()


@pytest.fixture
def client(service, auth) -> TestClient:
    return TestClient(create_app(service, auth=auth))


@pytest.fixture
def headers(auth) -> dict:
    return {"Authorization": f"Bearer {auth.create_session('alice').token}"}


def _open(client: TestClient, headers: dict, balance) -> dict:
    response = client.post("/accounts", json={"starting_balance": balance}, headers=headers)
    assert response.status_code == 201
    return response.json()


def test_health_reports_database_state(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["database"] == "ok"


def test_requests_without_session_are_rejected(client) -> None:
    response = client.post(
        "/transfers", json={"from_account_id": "a", "to_account_id": "b", "amount": 1}
    )

    assert response.status_code == 401
    assert response.json() == {"error": "User not authenticated"}
    assert client.get("/accounts", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_transfer_endpoint_moves_money(client, service, headers) -> None:
    source = _open(client, headers, 100)
    target = _open(client, headers, 50)

    response = client.post(
        "/transfers",
        json={"from_account_id": source["id"], "to_account_id": target["id"], "amount": "30.00"},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["amount"] == 30.0
    assert body["from_account"] == source["account_number"]
    assert body["to_account"] == target["account_number"]
    assert balance_of(service, source["id"]) == Decimal("70.00")

    listed = client.get("/accounts", headers=headers).json()
    assert {account["id"]: account["balance"] for account in listed} == {
        source["id"]: 70.0,
        target["id"]: 80.0,
    }


def test_transfer_errors_map_to_status_codes(client, headers) -> None:
    source = _open(client, headers, 10)
    target = _open(client, headers, 0)

    def send(**overrides):
        payload = {"from_account_id": source["id"], "to_account_id": target["id"], "amount": 5}
        payload.update(overrides)
        return client.post("/transfers", json=payload, headers=headers)

    short = send(amount=50)
    assert short.status_code == 409
    assert short.json() == {"error": "Insufficient funds"}

    missing = send(to_account_id="missing")
    assert missing.status_code == 404
    assert missing.json() == {"error": "Accounts not found"}

    same = send(to_account_id=source["id"])
    assert same.status_code == 400
    assert same.json() == {"error": "Invalid accounts"}

    assert send(amount=0).status_code == 400


def test_idempotency_key_header_replays_transfer(client, service, headers) -> None:
    source = _open(client, headers, 100)
    target = _open(client, headers, 0)
    payload = {"from_account_id": source["id"], "to_account_id": target["id"], "amount": 25}
    retry_headers = {**headers, "Idempotency-Key": "dialog-123"}

    first = client.post("/transfers", json=payload, headers=retry_headers).json()
    second = client.post("/transfers", json=payload, headers=retry_headers).json()

    assert second["transfer_id"] == first["transfer_id"]
    assert second["replayed"] is True
    assert balance_of(service, source["id"]) == Decimal("75.00")

    conflict = client.post("/transfers", json={**payload, "amount": 26}, headers=retry_headers)
    assert conflict.status_code == 409


def test_transactions_endpoint_lists_newest_first(client, headers) -> None:
    account = _open(client, headers, 0)
    for amount in (1, 2):
        response = client.post(
            "/deposits", json={"account_id": account["id"], "amount": amount}, headers=headers
        )
        assert response.status_code == 200

    entries = client.get(
        "/transactions", params={"account_id": account["id"], "limit": 1}, headers=headers
    ).json()

    assert len(entries) == 1
    assert entries[0]["amount"] == 2.0
    assert entries[0]["balance_after"] == 3.0


def test_bill_endpoints(client, headers) -> None:
    account = _open(client, headers, 100)
    created = client.post(
        "/bills",
        json={"payee_name": "Power", "payee_account": "PWR-1", "amount": 40, "due_date": "2026-03-01"},
        headers=headers,
    )
    assert created.status_code == 201
    bill = created.json()

    paid = client.post(f"/bills/{bill['id']}/pay", json={"account_id": account["id"]}, headers=headers)

    assert paid.status_code == 200
    assert paid.json()["balance_after"] == 60.0
    assert client.get("/bills", headers=headers).json()[0]["status"] == "paid"
    assert client.post("/bills/unknown/pay", json={}, headers=headers).status_code == 404


def test_schedule_and_allowance_endpoints(client, headers) -> None:
    source = _open(client, headers, 100)
    target = _open(client, headers, 0)

    schedule = client.post(
        "/scheduled-transfers",
        json={
            "from_account_id": source["id"],
            "to_account_id": target["id"],
            "amount": 5,
            "frequency": "weekly",
            "first_run": "2026-01-01",
        },
        headers=headers,
    )
    assert schedule.status_code == 201
    assert client.get("/scheduled-transfers", headers=headers).json()[0]["frequency"] == "weekly"

    allowance = client.post(
        "/allowances",
        json={
            "funding_account_id": source["id"],
            "spend_account_id": target["id"],
            "amount": 10,
            "split_spend": 70,
            "split_save": 30,
        },
        headers=headers,
    )
    assert allowance.status_code == 201

    payout = client.post(f"/allowances/{allowance.json()['id']}/pay", headers=headers)
    assert payout.status_code == 200
    assert payout.json()["split"] == {"spend": 7.0, "save": 3.0, "give": 0.0}


def test_status_for_mapping() -> None:
    assert status_for(AccountsNotFoundError()) == 404
    assert status_for(InvalidAccountsError()) == 400
    assert status_for(InsufficientFundsError()) == 409
    assert status_for(ConcurrencyError()) == 503
    assert status_for(StorageError("disk full")) == 503


def test_oversized_amounts_are_bad_requests(client, service, headers) -> None:
    source = _open(client, headers, 10)
    target = _open(client, headers, 0)

    transfer = client.post(
        "/transfers",
        json={"from_account_id": source["id"], "to_account_id": target["id"], "amount": "1e30"},
        headers=headers,
    )
    deposit = client.post(
        "/deposits", json={"account_id": target["id"], "amount": "1e20"}, headers=headers
    )

    assert transfer.status_code == 400
    assert "maximum" in transfer.json()["error"]
    assert deposit.status_code == 400
    assert balance_of(service, source["id"]) == Decimal("10.00")
    assert balance_of(service, target["id"]) == Decimal("0.00")
