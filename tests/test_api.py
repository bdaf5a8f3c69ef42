from datetime import date, datetime
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bank_client import BankClient
from database import Base
from main import app, get_bank_client_factory, get_db
from models import Account, Transaction, User
from periods import day_start_ms

EMAIL = "kari@example.no"
NOON_MS = 12 * 60 * 60 * 1000

ACCOUNTS = [
    {
        "key": "acc-1",
        "accountNumber": "12345678901",
        "name": "Brukskonto",
        "balance": 10432.5,
        "currencyCode": "NOK",
        "type": "USER",
    },
    {"key": "acc-2", "accountNumber": "10987654321", "name": "Sparekonto"},
]


def _txn(amount, day: date, description, key="acc-1"):
    return {
        "id": f"{key}-{description}",
        "amount": amount,
        "date": day_start_ms(day) + NOON_MS,
        "description": description,
        "accountKey": key,
        "currencyCode": "NOK",
        "bookingStatus": "BOOKED",
    }


TRANSACTIONS = [
    _txn(-250.0, date(2024, 3, 1), "REMA 1000"),
    _txn(-89.0, date(2024, 3, 2), "Spotify"),
    _txn(32000.0, date(2024, 3, 3), "Lonn", key="acc-2"),
]


def _bank_handler(responses):
    def handler(request: httpx.Request) -> httpx.Response:
        status, body, headers = responses[request.url.path]
        return httpx.Response(status, json=body, headers=headers)

    return handler


@pytest.fixture
def api():
    engine = create_engine(
        "sqlite://",
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

    responses = {
        "/accounts": (200, {"accounts": ACCOUNTS}, None),
        "/transactions": (200, {"transactions": TRANSACTIONS}, None),
    }

    def client_factory(token: str) -> BankClient:
        return BankClient(
            token,
            base_url="https://bank.test",
            transport=httpx.MockTransport(_bank_handler(responses)),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_bank_client_factory] = lambda: client_factory
    client = TestClient(app)
    client.responses = responses
    client.session_factory = TestingSession
    yield client
    app.dependency_overrides.clear()


def test_sync_accounts_then_cached_until_forced(api) -> None:
    body = {"accessToken": "tok", "userEmail": EMAIL}
    first = api.post("/sync/accounts", json=body)
    assert first.status_code == 200
    data = first.json()["data"]
    assert first.json()["success"] is True
    assert data["count"] == 2
    assert data["cached"] is False
    assert {a["key"] for a in data["accounts"]} == {"acc-1", "acc-2"}

    second = api.post("/sync/accounts", json=body)
    assert second.json()["data"]["cached"] is True

    forced = api.post("/sync/accounts", json={**body, "force": True})
    assert forced.json()["data"]["cached"] is False


def test_sync_transactions_requires_accounts(api) -> None:
    response = api.post(
        "/sync/transactions", json={"accessToken": "tok", "userEmail": EMAIL}
    )
    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "no_accounts",
        "message": "No accounts found. Sync accounts first via /sync/accounts",
    }


def test_sync_transactions_reconciles_and_skips_on_rerun(api) -> None:
    body = {"accessToken": "tok", "userEmail": EMAIL}
    api.post("/sync/accounts", json=body)

    first = api.post("/sync/transactions", json=body).json()["data"]
    assert (first["saved"], first["skipped"], first["failed"]) == (3, 0, 0)
    assert first["total"] == 3
    assert set(first["dateRange"]) == {"from", "to"}

    again = api.post("/sync/transactions", json=body).json()["data"]
    assert (again["saved"], again["skipped"]) == (0, 3)


def test_expired_token_is_rejected_before_bank_call(api) -> None:
    api.responses["/accounts"] = (500, {"error": "should not be called"}, None)
    response = api.post(
        "/sync/accounts",
        json={
            "accessToken": "tok",
            "userEmail": EMAIL,
            "expiresAt": "2020-01-01T00:00:00Z",
        },
    )
    assert response.status_code == 401
    assert response.json()["error"] == "token_expired"


def test_missing_parameters_are_400(api) -> None:
    response = api.post("/sync/accounts", json={"accessToken": "tok"})
    assert response.status_code == 400
    assert response.json()["error"] == "missing_parameters"
    assert "userEmail" in response.json()["message"]

    response = api.get("/budget/analysis")
    assert response.status_code == 400


def test_bank_rate_limit_passes_retry_after_through(api) -> None:
    api.responses["/accounts"] = (429, {}, {"Retry-After": "30"})
    response = api.post(
        "/sync/accounts", json={"accessToken": "tok", "userEmail": EMAIL}
    )
    assert response.status_code == 429
    assert response.headers["retry-after"] == "30"
    assert response.json()["retryAfter"] == "30"


def test_bank_auth_failure_maps_to_401(api) -> None:
    api.responses["/accounts"] = (401, {"error": "invalid_token"}, None)
    response = api.post(
        "/sync/accounts", json={"accessToken": "tok", "userEmail": EMAIL}
    )
    assert response.status_code == 401
    assert response.json()["error"] == "bank_auth_failed"


def test_account_number_filter_without_matches(api, monkeypatch) -> None:
    from config import get_settings

    monkeypatch.setattr(get_settings(), "account_numbers", ["00000000000"])
    response = api.post(
        "/sync/accounts", json={"accessToken": "tok", "userEmail": EMAIL}
    )
    assert response.status_code == 404
    assert response.json()["error"] == "no_target_accounts"


def test_transactions_listing_is_paginated_newest_first(api) -> None:
    body = {"accessToken": "tok", "userEmail": EMAIL}
    api.post("/sync/accounts", json=body)
    api.post("/sync/transactions", json=body)

    page = api.get("/transactions", params={"userEmail": EMAIL, "limit": 2}).json()
    items = page["data"]["transactions"]
    assert [t["description"] for t in items] == ["Lonn", "Spotify"]
    assert page["data"]["pagination"] == {
        "page": 1,
        "limit": 2,
        "total": 3,
        "hasMore": True,
    }

    searched = api.get(
        "/transactions", params={"userEmail": EMAIL, "search": "rema"}
    ).json()
    assert [t["amount"] for t in searched["data"]["transactions"]] == [-250.0]

    ranged = api.get(
        "/transactions",
        params={"userEmail": EMAIL, "fromDate": "2024-03-02", "toDate": "2024-03-02"},
    ).json()
    assert [t["description"] for t in ranged["data"]["transactions"]] == ["Spotify"]


def test_cleanup_duplicates_endpoint(api) -> None:
    with api.session_factory() as session:
        user = User(email=EMAIL)
        session.add(user)
        session.flush()
        account = Account(user_id=user.id, key="acc-1")
        session.add(account)
        session.flush()
        for minute in (0, 1, 2):
            session.add(
                Transaction(
                    user_id=user.id,
                    account_id=account.id,
                    amount=Decimal("-42.00"),
                    date=1709636400000,
                    description="Kaffe",
                    created_at=datetime(2024, 3, 5, 10, minute),
                )
            )
        session.commit()

    response = api.post("/transactions/cleanup-duplicates", json={"userEmail": EMAIL})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["duplicatesFound"] == 3
    assert data["duplicatesRemoved"] == 2

    with api.session_factory() as session:
        assert len(session.scalars(select(Transaction.id)).all()) == 1

    again = api.post("/transactions/cleanup-duplicates", json={"userEmail": EMAIL})
    assert again.json()["data"]["duplicatesRemoved"] == 0
    assert again.json()["message"] == "No duplicate transactions found"


def test_unknown_user_is_created_on_first_read(api) -> None:
    response = api.get(
        "/budget/summary",
        params={"userEmail": "nobody@example.no", "year": 2024, "month": 3},
    )
    assert response.status_code == 200
    assert response.json()["success"] is True

    with api.session_factory() as session:
        emails = session.scalars(select(User.email)).all()
    assert emails == ["nobody@example.no"]


def test_budget_flow(api) -> None:
    body = {"accessToken": "tok", "userEmail": EMAIL}
    api.post("/sync/accounts", json=body)
    api.post("/sync/transactions", json=body)

    categories = api.post("/budget/categories").json()["data"]["categories"]
    by_name = {c["name"]: c for c in categories}
    assert by_name["Salary"]["isIncome"] is True

    saved = api.post(
        "/budget/manage",
        json={
            "userEmail": EMAIL,
            "categoryId": by_name["Shopping"]["id"],
            "month": 3,
            "year": 2024,
            "budgetedAmount": 1000,
        },
    )
    assert saved.status_code == 200
    assert saved.json()["data"]["budget"]["alertPercentage"] == 80

    rejected = api.post(
        "/budget/manage",
        json={
            "userEmail": EMAIL,
            "categoryId": by_name["Salary"]["id"],
            "month": 3,
            "year": 2024,
            "budgetedAmount": 1000,
        },
    )
    assert rejected.status_code == 400

    goal = api.post(
        "/budget/goal",
        json={"userEmail": EMAIL, "month": 3, "year": 2024, "totalBudget": 8000},
    )
    assert goal.json()["data"]["goal"]["totalBudget"] == 8000.0

    fetched = api.get(
        "/budget/goal", params={"userEmail": EMAIL, "month": 3, "year": 2024}
    ).json()
    assert fetched["data"]["goal"]["totalBudget"] == 8000.0

    listed = api.get(
        "/budget/manage", params={"userEmail": EMAIL, "month": 3, "year": 2024}
    ).json()
    assert len(listed["data"]["budgets"]) == 1

    analysis = api.get(
        "/budget/analysis", params={"userEmail": EMAIL, "year": 2024, "month": 3}
    ).json()["data"]
    assert analysis["monthlyGoal"]["isSet"] is True
    assert analysis["monthlyGoal"]["difference"] == 7000.0
    assert analysis["totals"]["budgeted"] == 1000.0
    assert analysis["period"]["daysElapsed"] == 31
    # REMA 1000 falls back, Spotify is entertainment; neither is budgeted
    assert analysis["totals"]["unbudgetedSpent"] == 339.0

    summary = api.get(
        "/budget/summary", params={"userEmail": EMAIL, "year": 2024, "month": 3}
    ).json()["data"]
    assert summary["period"] == {"month": 3, "year": 2024}


def test_analytics_overview(api) -> None:
    body = {"accessToken": "tok", "userEmail": EMAIL}
    api.post("/sync/accounts", json=body)
    api.post("/sync/transactions", json=body)
    api.post("/budget/categories")

    data = api.get(
        "/analytics", params={"userEmail": EMAIL, "year": 2024, "month": 3}
    ).json()["data"]
    health = data["financialHealth"]
    assert health["metrics"]["totalIncome"] == 32000.0
    assert health["metrics"]["totalExpenses"] == 339.0
    assert health["status"] == "Excellent"
    assert len(data["monthlyTrends"]) == 6
    assert data["monthlyTrends"][-1]["month"] == 3


def test_oauth_exchange_rejects_unsigned_state(api) -> None:
    response = api.post("/oauth/exchange", json={"code": "c", "state": "forged"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_state"


def test_health(api) -> None:
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ok"
