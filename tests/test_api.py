import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from auth import issue_session_token
from config import Settings
from database import Base, get_db
from openrouter import ChatResponse, OpenRouterError, OpenRouterRateLimitError, Usage

USER = "user-1"


class FakeClient:
    def __init__(self, reply: str = "All good", error: Exception = None) -> None:
        self.reply = reply
        self.error = error
        self.calls = []
        self.ran_on_event_loop = None

    def chat(self, options):
        self.calls.append(options)
        try:
            asyncio.get_running_loop()
            self.ran_on_event_loop = True
        except RuntimeError:
            self.ran_on_event_loop = False
        if self.error is not None:
            raise self.error
        return ChatResponse(
            id="gen-1",
            content=self.reply,
            model="openai/gpt-4o-mini",
            finish_reason="stop",
            usage=Usage(),
        )


@pytest.fixture
def client():
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

    main.app.dependency_overrides[get_db] = override_get_db
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def _auth(user_id: str = USER) -> dict:
    return {"Authorization": f"Bearer {issue_session_token(user_id)}"}


def _seed(client: TestClient) -> None:
    food = client.post("/api/categories", json={"name": "Food"}, headers=_auth()).json()
    salary = client.post("/api/categories", json={"name": "Salary"}, headers=_auth()).json()
    for amount, kind, category, day in [
        ("200.50", "expense", food, "03"),
        ("150.25", "expense", food, "10"),
        ("1000", "income", salary, "25"),
    ]:
        response = client.post(
            "/api/transactions",
            json={
                "amount": amount,
                "type": kind,
                "category_id": category["id"],
                "description": "Entry",
                "occurred_at": f"2024-02-{day}T12:00:00Z",
            },
            headers=_auth(),
        )
        assert response.status_code == 201


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Token abc"},
        {"Authorization": "Bearer not-a-token"},
    ],
)
def test_requests_without_valid_session_are_rejected(client, headers) -> None:
    response = client.get("/api/summary", headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_monthly_summary_endpoint(client) -> None:
    _seed(client)

    response = client.get("/api/summary", params={"month": "2024-02"}, headers=_auth())

    assert response.status_code == 200
    data = response.json()
    assert data["month"] == "2024-02"
    assert data["total_income"] == "1000.00"
    assert data["total_expenses"] == "350.75"
    assert data["balance"] == "649.25"
    assert [c["category_name"] for c in data["categories"]] == ["Food", "Salary"]
    assert data["categories"][0]["transaction_count"] == 2


def test_summary_is_per_user(client) -> None:
    _seed(client)

    data = client.get(
        "/api/summary", params={"month": "2024-02"}, headers=_auth("user-2")
    ).json()

    assert data["categories"] == []
    assert data["balance"] == "0.00"


@pytest.mark.parametrize("month", ["2024-13", "24-02", "2024-2"])
def test_malformed_month_is_a_validation_error(client, month) -> None:
    response = client.get("/api/summary", params={"month": month}, headers=_auth())

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"][0]["field"] == "month"


def test_profile_timezone_moves_month_boundaries(client) -> None:
    _seed(client)
    response = client.put(
        "/api/profile", json={"timezone": "Pacific/Auckland"}, headers=_auth()
    )
    assert response.status_code == 200
    assert response.json()["timezone"] == "Pacific/Auckland"

    data = client.get("/api/summary", params={"month": "2024-02"}, headers=_auth()).json()

    # 2024-02-25T12:00Z is still in February in Auckland; all three stay
    assert data["total_expenses"] == "350.75"


def test_profile_rejects_unknown_timezone(client) -> None:
    response = client.put("/api/profile", json={"timezone": "Mars/Olympus"}, headers=_auth())

    assert response.status_code == 400
    assert response.json()["error"]["details"][0]["field"] == "timezone"


def test_missing_profile_is_not_found(client) -> None:
    response = client.get("/api/profile", headers=_auth())

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_invalid_json_body(client) -> None:
    response = client.post(
        "/api/categories",
        content=b"{not json",
        headers={**_auth(), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["details"] == [
        {"field": "body", "message": "Invalid JSON body"}
    ]


def test_category_conflict_and_system_protection(client) -> None:
    _seed(client)
    duplicate = client.post("/api/categories", json={"name": "food"}, headers=_auth())
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "CONFLICT"

    food_id = next(
        c["id"]
        for c in client.get("/api/categories", headers=_auth()).json()["categories"]
        if c["name"] == "Food"
    )
    deleted = client.delete(f"/api/categories/{food_id}", headers=_auth())
    assert deleted.json() == {
        "message": "Category deleted successfully",
        "transactions_moved": 2,
    }

    system = next(
        c
        for c in client.get("/api/categories", headers=_auth()).json()["categories"]
        if c["is_system"]
    )
    assert system["name"] == "Uncategorized"
    forbidden = client.delete(f"/api/categories/{system['id']}", headers=_auth())
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "FORBIDDEN"


def test_transactions_listing_and_lifecycle(client) -> None:
    _seed(client)

    listing = client.get(
        "/api/transactions", params={"month": "2024-02", "limit": 2}, headers=_auth()
    ).json()
    assert listing["pagination"] == {
        "total": 3,
        "limit": 2,
        "offset": 0,
        "has_more": True,
    }
    newest = listing["transactions"][0]
    assert newest["amount"] == "1000.00"

    patched = client.patch(
        f"/api/transactions/{newest['id']}",
        json={"description": "February salary"},
        headers=_auth(),
    ).json()
    assert patched["description"] == "February salary"
    assert patched["amount"] == "1000.00"

    assert client.delete(f"/api/transactions/{newest['id']}", headers=_auth()).status_code == 200
    missing = client.get(f"/api/transactions/{newest['id']}", headers=_auth())
    assert missing.status_code == 404


def test_ai_analysis_returns_model_reply(client) -> None:
    _seed(client)
    fake = FakeClient(reply="## Summary\nYou saved money.")
    main.app.dependency_overrides[main.get_openrouter_client] = lambda: fake

    response = client.post(
        "/api/summary/ai-analysis", json={"month": "2024-02"}, headers=_auth()
    )

    assert response.status_code == 200
    assert response.json() == {"analysis": "## Summary\nYou saved money.", "month": "2024-02"}
    prompt = fake.calls[0].messages[1].content
    assert "Total expenses: 350.75" in prompt
    assert "- Food: 350.75" in prompt


def test_ai_analysis_upstream_failure_is_bad_gateway(client) -> None:
    fake = FakeClient(error=OpenRouterRateLimitError("Slow down", retry_after=5))
    main.app.dependency_overrides[main.get_openrouter_client] = lambda: fake

    response = client.post("/api/summary/ai-analysis", json={}, headers=_auth())

    assert response.status_code == 502
    assert response.json()["error"]["message"] == "AI service error: Slow down"


def test_ai_analysis_network_failure_is_bad_gateway(client) -> None:
    fake = FakeClient(error=OpenRouterError("Network error", "NETWORK_ERROR"))
    main.app.dependency_overrides[main.get_openrouter_client] = lambda: fake

    response = client.post("/api/summary/ai-analysis", json={}, headers=_auth())

    assert response.status_code == 502


def test_ai_analysis_without_api_key(client, monkeypatch) -> None:
    settings = Settings(
        database_url="sqlite://",
        session_secret="secret",
        session_max_age_secs=3600,
        openrouter_api_key=None,
        openrouter_model="openai/gpt-4o-mini",
        openrouter_timeout_secs=30,
        openrouter_site_name="SimpleBudget",
        openrouter_site_url="",
    )
    monkeypatch.setattr(main, "get_settings", lambda: settings)

    response = client.post("/api/summary/ai-analysis", json={}, headers=_auth())

    assert response.status_code == 503
    assert response.json()["error"]["message"] == "AI service is not configured"


def test_ai_analysis_calls_model_off_the_event_loop(client) -> None:
    fake = FakeClient()
    main.app.dependency_overrides[main.get_openrouter_client] = lambda: fake

    response = client.post("/api/summary/ai-analysis", json={}, headers=_auth())

    assert response.status_code == 200
    assert fake.ran_on_event_loop is False


def test_main_serves_app_with_uvicorn(monkeypatch) -> None:
    import uvicorn

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))

    main.main()

    assert calls == [(("main:app",), {"host": "0.0.0.0", "port": 8000, "reload": False})]
