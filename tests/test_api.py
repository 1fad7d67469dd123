import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base

T = 1715774400


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    enabled = main.dispatcher.enabled
    main.dispatcher.enabled = False
    yield TestClient(main.app)
    main.dispatcher.enabled = enabled
    main.app.dependency_overrides.clear()


def register(client: TestClient) -> dict:
    resp = client.post(
        "/api/v1/users/register",
        json={
            "username": "alice",
            "email": "alice@example.com",
            "nickname": "Alice",
            "password": "correct horse",
            "default_currency": "USD",
        },
    )
    assert resp.status_code == 200
    return {"X-User-Id": str(resp.json()["id"])}


def test_transfer_round_trip_over_http(client: TestClient) -> None:
    headers = register(client)

    def create_account(name: str) -> int:
        resp = client.post(
            "/api/v1/accounts",
            json={"name": name, "category": "cash", "currency": "USD"},
            headers=headers,
        )
        assert resp.status_code == 200
        return resp.json()["id"]

    checking, wallet = create_account("Checking"), create_account("Wallet")
    moves = client.post(
        "/api/v1/categories",
        json={"name": "Moves", "type": "transfer"},
        headers=headers,
    ).json()
    internal = client.post(
        "/api/v1/categories",
        json={"name": "Internal", "type": "transfer", "parent_id": moves["id"]},
        headers=headers,
    ).json()

    resp = client.post(
        "/api/v1/transactions",
        json={
            "type": "transfer",
            "category_id": internal["id"],
            "time": T,
            "source_account_id": checking,
            "source_amount": 2500,
            "destination_account_id": wallet,
            "destination_amount": 2500,
        },
        headers=headers,
    )
    assert resp.status_code == 200
    created = resp.json()
    assert created["type"] == "transfer"
    assert created["time"] == T
    assert created["editable"] is True

    listed = client.get(
        "/api/v1/transactions", params={"account_id": wallet}, headers=headers
    ).json()
    assert [item["id"] for item in listed["items"]] == [created["id"]]
    assert listed["next_time_sequence_id"] is None

    balances = {
        account["name"]: account["balance"]
        for account in client.get("/api/v1/accounts", headers=headers).json()
    }
    assert balances == {"Checking": -2500, "Wallet": 2500}

    unknown = client.get(
        "/api/v1/transactions", params={"account_id": 9999}, headers=headers
    ).json()
    assert unknown["items"] == []


def test_ledger_errors_map_to_http_status(client: TestClient) -> None:
    headers = register(client)

    missing = client.get("/api/v1/transactions/9999", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"

    bad_range = client.get(
        "/api/v1/statistics/trends",
        params={"start_year_month": "2024-06", "end_year_month": "2024-05"},
        headers=headers,
    )
    assert bad_range.status_code == 400
    assert bad_range.json()["error"] == "InvalidRequest"

    empty = client.get(
        "/api/v1/statistics/amounts", params={"query": ""}, headers=headers
    )
    assert empty.status_code == 400
    assert empty.json()["error"] == "EmptyQueryItems"

    assert client.get("/api/v1/transactions").status_code == 422
