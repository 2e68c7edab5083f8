from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import issue_access_token
from database import Base, get_db
from mailer import Mailer
from main import app, get_mailer
from models import User


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        super().__init__()
        self.sent = []

    def send_alert_email(self, address, display_name, alerts) -> bool:
        self.sent.append((address, list(alerts)))
        return True


def make_session_factory(create_tables: bool = True):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_db(SessionLocal):
    def _get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    return _get_db


@pytest.fixture()
def mailer():
    return RecordingMailer()


@pytest.fixture()
def client(mailer):
    SessionLocal = make_session_factory()
    with SessionLocal() as session:
        user = User(email="ama@example.com", first_name="Ama", last_name="Kouassi")
        session.add(user)
        session.commit()
        user_id = user.id
    app.dependency_overrides[get_db] = override_db(SessionLocal)
    app.dependency_overrides[get_mailer] = lambda: mailer
    test_client = TestClient(app)
    test_client.headers["Authorization"] = f"Bearer {issue_access_token(user_id)}"
    yield test_client
    app.dependency_overrides.clear()


def create_category(client, name="Food", type="expense"):
    response = client.post("/api/categories", json={"name": name, "type": type})
    assert response.status_code == 201
    return response.json()["category"]


def create_transaction(client, category_id, amount="12.50", type="expense", day="2024-01-05"):
    response = client.post(
        "/api/transactions",
        json={
            "date": day,
            "type": type,
            "amount": amount,
            "category_id": category_id,
            "description": "Lunch",
        },
    )
    assert response.status_code == 201
    return response.json()["transaction"]


def test_requests_without_token_are_rejected(client) -> None:
    response = client.get("/api/profile", headers={"Authorization": ""})

    assert response.status_code == 401
    assert response.json()["code"] == "http_error"
    assert response.headers["WWW-Authenticate"] == "Bearer"

    forged = client.get("/api/profile", headers={"Authorization": "Bearer nope"})
    assert forged.status_code == 401


def test_profile_read_and_update(client) -> None:
    assert client.get("/api/profile").json()["email"] == "ama@example.com"

    response = client.put(
        "/api/profile", json={"first_name": " Akua ", "last_name": "Mensah"}
    )

    assert response.status_code == 200
    assert response.json()["user"]["first_name"] == "Akua"


def test_category_errors_map_to_status_codes(client) -> None:
    food = create_category(client)

    duplicate = client.post("/api/categories", json={"name": "FOOD", "type": "expense"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"

    create_transaction(client, food["id"])
    in_use = client.delete(f"/api/categories/{food['id']}")
    assert in_use.status_code == 409
    assert in_use.json()["code"] == "business_rule_violation"

    missing = client.get("/api/categories/999")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    bad_color = client.post(
        "/api/categories", json={"name": "Rent", "type": "expense", "color": "red"}
    )
    assert bad_color.status_code == 400
    assert bad_color.json()["code"] == "validation_error"


def test_transaction_lifecycle(client) -> None:
    food = create_category(client)
    txn = create_transaction(client, food["id"])

    assert txn["amount"] == 12.5
    assert txn["amount_cents"] == 1250
    assert txn["category_name"] == "Food"

    listing = client.get("/api/transactions", params={"type": "expense"}).json()
    assert listing["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}

    updated = client.put(
        f"/api/transactions/{txn['id']}",
        json={
            "date": "2024-01-06",
            "type": "expense",
            "amount": "20",
            "category_id": food["id"],
        },
    )
    assert updated.json()["transaction"]["amount_cents"] == 2000

    assert client.delete(f"/api/transactions/{txn['id']}").status_code == 200
    assert client.get(f"/api/transactions/{txn['id']}").status_code == 404


def test_transaction_body_is_validated(client) -> None:
    food = create_category(client)

    zero = client.post(
        "/api/transactions",
        json={"date": "2024-01-05", "type": "expense", "amount": "0", "category_id": food["id"]},
    )
    assert zero.status_code == 400

    wrong_kind = client.post(
        "/api/transactions",
        json={"date": "2024-01-05", "type": "income", "amount": "5", "category_id": food["id"]},
    )
    assert wrong_kind.status_code == 409
    assert wrong_kind.json()["code"] == "business_rule_violation"

    too_large_page = client.get("/api/transactions", params={"limit": 500})
    assert too_large_page.status_code == 400


def test_monthly_statistics_endpoints(client) -> None:
    business = create_category(client, "Business", "hybrid")
    create_transaction(client, business["id"], amount="2000", type="income", day="2024-01-05")
    create_transaction(client, business["id"], amount="500", day="2024-01-20")

    stats = client.get("/api/dashboard/monthly-stats", params={"month": "2024-01"})
    assert stats.json() == {
        "month": "2024-01",
        "income": 2000.0,
        "expense": 500.0,
        "balance": 1500.0,
        "transaction_count": 2,
    }

    by_path = client.get("/api/transactions/stats/monthly/2024/1").json()
    assert by_path["statistics"]["balance"] == 1500.0

    invalid = client.get("/api/dashboard/monthly-stats", params={"month": "2024-13"})
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "validation_error"


def test_category_breakdown_and_charts(client) -> None:
    food = create_category(client)
    rent = create_category(client, "Rent")
    create_transaction(client, food["id"], amount="100")
    create_transaction(client, rent["id"], amount="300")

    breakdown = client.get(
        "/api/transactions/stats/by-category",
        params={"start_date": "2024-01-01", "end_date": "2024-01-31"},
    ).json()["breakdown"]
    assert [(e["category_name"], e["percentage"]) for e in breakdown] == [
        ("Rent", 75.0),
        ("Food", 25.0),
    ]

    charts = client.get(
        "/api/dashboard/charts",
        params={"start_date": "2024-01-01", "end_date": "2024-01-31", "chart_type": "pie"},
    ).json()
    assert list(charts) == ["pie"]
    assert charts["pie"][0]["name"] == "Rent"

    assert client.get("/api/dashboard/charts").status_code == 400


def test_csv_and_json_exports(client) -> None:
    food = create_category(client)
    create_transaction(client, food["id"], amount="1500")
    params = {"start_date": "2024-01-01", "end_date": "2024-01-31"}

    csv_response = client.get("/api/export/transactions/csv", params=params)
    assert csv_response.status_code == 200
    assert csv_response.headers["content-disposition"] == (
        'attachment; filename="transactions_2024-01-01_2024-01-31.csv"'
    )
    assert csv_response.text.splitlines() == [
        "Date,Type,Amount,Category,Description",
        '05-01-2024,Expense,-1 500 FCFA,Food,"Lunch"',
    ]

    json_response = client.get("/api/export/transactions/json", params=params)
    payload = json_response.json()
    assert payload["total_transactions"] == 1
    assert payload["transactions"][0]["category"] == "Food"

    unknown = client.get("/api/export/transactions/xml", params=params)
    assert unknown.status_code == 400
    assert unknown.json()["code"] == "validation_error"

    no_dates = client.get("/api/export/transactions/csv")
    assert no_dates.status_code == 400


def test_monthly_report_export(client) -> None:
    food = create_category(client)
    create_transaction(client, food["id"], amount="300")

    report = client.get("/api/export/report/monthly/2024/1").json()
    assert report["summary"]["total_expense"] == 300.0

    csv_report = client.get("/api/export/report/monthly/2024/1", params={"format": "csv"})
    assert csv_report.text.startswith("Monthly report - MoneyWise\n")
    assert "Food,300.00,100.0%,1" in csv_report.text


def test_custom_alerts(client, mailer) -> None:
    single = client.post(
        "/api/notifications/send-custom-alert",
        json={"type": "info", "message": "Hello"},
    )
    assert single.status_code == 200
    assert single.json()["alerts"][0]["code"] == "CUSTOM_ALERT"
    assert single.json()["email_sent"] is True
    assert mailer.sent[0][0] == "ama@example.com"

    batch = client.post(
        "/api/notifications/send-multiple-alerts",
        json={
            "alerts": [
                {"type": "warning", "message": "One"},
                {"type": "danger", "message": "Two", "severity": "critical"},
            ],
            "send_email": False,
        },
    )
    assert [a["code"] for a in batch.json()["alerts"]] == [
        "CUSTOM_ALERT_1",
        "CUSTOM_ALERT_2",
    ]
    assert batch.json()["email_sent"] is False

    invalid = client.post(
        "/api/notifications/send-custom-alert",
        json={"type": "panic", "message": "Hello"},
    )
    assert invalid.status_code == 400


def test_alert_check_for_current_user(client) -> None:
    salary = create_category(client, "Salary", "income")
    create_transaction(client, salary["id"], amount="100", type="income", day=date.today().isoformat())

    response = client.post("/api/notifications/check-user", json={"send_email": False})

    assert response.status_code == 200
    assert response.json() == {"alerts": [], "email_sent": False}


def test_scheduler_status(client) -> None:
    status = client.get("/api/notifications/status").json()

    assert status["is_running"] is False
    assert status["last_users_checked"] == 0


def test_data_store_failure_is_retryable() -> None:
    SessionLocal = make_session_factory(create_tables=False)
    app.dependency_overrides[get_db] = override_db(SessionLocal)
    try:
        client = TestClient(app)
        response = client.get(
            "/api/profile",
            headers={"Authorization": f"Bearer {issue_access_token(1)}"},
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["code"] == "database_unavailable"
    assert response.json()["retryable"] is True


def test_invalid_input_is_rejected_not_defaulted(client) -> None:
    food = create_category(client)

    blank = client.put(f"/api/categories/{food['id']}", json={"name": "   "})
    assert blank.status_code == 400
    assert blank.json()["code"] == "validation_error"
    assert client.get(f"/api/categories/{food['id']}").json()["name"] == "Food"

    for params in ({"year": 2024, "month": 0}, {"year": 0, "month": 5}):
        response = client.get("/api/dashboard/summary", params=params)
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    summary = client.get("/api/dashboard/summary", params={"year": 2024, "month": 2})
    assert summary.status_code == 200
    assert summary.json()["monthly_statistics"]["month"] == 2
