from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coachbook.config import get_settings
from coachbook.core.timeutils import utc_now
from coachbook.db.session import Base, get_db
from coachbook.main import app

from factories import create_coach, create_user


def token_for(user_id: int, role: str) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": str(user_id), "role": role}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def next_start(days: int = 3) -> str:
    start = (utc_now() + timedelta(days=days)).replace(minute=0, second=0, microsecond=0)
    return start.isoformat()


@pytest.fixture()
def api_client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSessionLocal = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield client, TestingSessionLocal
    app.dependency_overrides.clear()


@pytest.fixture()
def people(api_client):
    _, SessionLocal = api_client
    db = SessionLocal()
    coach = create_coach(db)
    client = create_user(db, "client@example.com")
    other = create_user(db, "other@example.com")
    ids = {"coach": coach.id, "client": client.id, "other": other.id}
    db.close()
    return ids


def test_requests_without_token_are_rejected(api_client):
    client, _ = api_client

    response = client.post("/api/v1/bookings/individual", json={})

    assert response.status_code == 401


def test_individual_booking_lifecycle(api_client, people):
    client, _ = api_client
    as_client = token_for(people["client"], "client")
    as_coach = token_for(people["coach"], "coach")

    response = client.post(
        "/api/v1/bookings/individual",
        json={"coach_id": people["coach"], "scheduled_start_at": next_start(), "duration_min": 60},
        headers=as_client,
    )
    assert response.status_code == 200
    booking = response.json()
    assert booking["approval_status"] == "pending_review"
    assert booking["individual_details"]["gross_cents"] == 12147
    booking_id = booking["id"]

    assert client.get(f"/api/v1/bookings/{booking_id}/status", headers=as_client).json()["status"] == "awaiting_coach"
    assert client.post(f"/api/v1/bookings/{booking_id}/accept", headers=as_coach).status_code == 200
    assert client.get(f"/api/v1/bookings/{booking_id}/status", headers=as_client).json()["status"] == "awaiting_payment"
    assert client.post(f"/api/v1/bookings/{booking_id}/payment", headers=as_client).status_code == 200
    confirmed = client.post(f"/api/v1/bookings/{booking_id}/payment/confirm", headers=as_client)
    assert confirmed.status_code == 200
    assert confirmed.json()["individual_details"]["payment_status"] == "captured"
    assert client.get(f"/api/v1/bookings/{booking_id}/status", headers=as_client).json()["status"] == "confirmed"


def test_business_failures_map_to_status_codes(api_client, people):
    client, _ = api_client
    as_client = token_for(people["client"], "client")
    as_other = token_for(people["other"], "client")
    as_coach = token_for(people["coach"], "coach")
    body = {"coach_id": people["coach"], "scheduled_start_at": next_start(), "duration_min": 60}

    booking_id = client.post("/api/v1/bookings/individual", json=body, headers=as_client).json()["id"]

    conflict = client.post("/api/v1/bookings/individual", json=body, headers=as_other)
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["kind"] == "conflict"

    forbidden = client.post(f"/api/v1/bookings/{booking_id}/accept", headers=as_client)
    assert forbidden.status_code == 403

    invalid = client.post(
        "/api/v1/bookings/individual",
        json={**body, "duration_min": 0},
        headers=as_other,
    )
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["kind"] == "validation"

    missing = client.post("/api/v1/bookings/9999/accept", headers=as_coach)
    assert missing.status_code == 404


def test_history_is_admin_only(api_client, people):
    client, _ = api_client
    as_client = token_for(people["client"], "client")
    body = {"coach_id": people["coach"], "scheduled_start_at": next_start(), "duration_min": 60}
    booking_id = client.post("/api/v1/bookings/individual", json=body, headers=as_client).json()["id"]

    assert client.get(f"/api/v1/bookings/{booking_id}/history", headers=as_client).status_code == 403
    rows = client.get(f"/api/v1/bookings/{booking_id}/history", headers=token_for(1000, "admin")).json()
    assert [row["new_value"] for row in rows] == ["pending_review"]


def test_group_lesson_join_over_http(api_client, people):
    client, _ = api_client
    as_coach = token_for(people["coach"], "coach")
    lesson = client.post(
        "/api/v1/group-lessons",
        json={
            "scheduled_start_at": next_start(),
            "duration_min": 60,
            "min_participants": 2,
            "max_participants": 2,
            "price_per_person_cents": 5000,
        },
        headers=as_coach,
    )
    assert lesson.status_code == 200
    lesson_id = lesson.json()["id"]

    for name in ("client", "other"):
        joined = client.post(f"/api/v1/group-lessons/{lesson_id}/join", headers=token_for(people[name], "client"))
        assert joined.status_code == 200
        assert joined.json()["status"] == "awaiting_payment"

    late = client.post(f"/api/v1/group-lessons/{lesson_id}/join", headers=token_for(4242, "client"))
    assert late.status_code == 409

    participants = client.get(f"/api/v1/group-lessons/{lesson_id}/participants", headers=as_coach).json()
    assert len(participants) == 2
    own = client.get(
        f"/api/v1/group-lessons/{lesson_id}/participants", headers=token_for(people["client"], "client")
    ).json()
    assert [row["user_id"] for row in own] == [people["client"]]


def test_task_endpoints_require_admin(api_client, people):
    client, _ = api_client

    assert client.post("/api/v1/tasks/payment-deadlines", headers=token_for(people["coach"], "coach")).status_code == 403
    response = client.post("/api/v1/tasks/payment-deadlines", headers=token_for(1000, "admin"))
    assert response.status_code == 200
    assert response.json() == {"reminders_sent": 0, "cancelled": 0, "errors": []}
    sweep = client.post("/api/v1/tasks/seat-holds", headers=token_for(1000, "admin"))
    assert sweep.json() == {"processed": 0, "errors": []}


def test_malformed_webhook_rejected(api_client):
    client, _ = api_client

    response = client.post("/api/v1/payments/webhook", content=b"not json")

    assert response.status_code == 400


def test_webhook_for_unknown_hold(api_client):
    client, _ = api_client

    response = client.post(
        "/api/v1/payments/webhook",
        json={"type": "payment_intent.amount_capturable_updated", "hold_ref": "hold_x", "status": "requires_capture"},
    )

    assert response.json() == {"status": "unknown"}


def test_booking_is_hidden_from_strangers(api_client, people):
    client, _ = api_client
    as_client = token_for(people["client"], "client")
    as_other = token_for(people["other"], "client")
    body = {"coach_id": people["coach"], "scheduled_start_at": next_start(), "duration_min": 60}
    booking_id = client.post("/api/v1/bookings/individual", json=body, headers=as_client).json()["id"]

    assert client.get(f"/api/v1/bookings/{booking_id}", headers=as_other).status_code == 403
    assert client.get(f"/api/v1/bookings/{booking_id}/status", headers=as_other).status_code == 403
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=as_client).status_code == 200
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=token_for(people["coach"], "coach")).status_code == 200
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=token_for(1000, "admin")).status_code == 200


def test_coach_earnings_over_http(api_client, people):
    client, _ = api_client

    own = client.get("/api/v1/bookings/earnings", headers=token_for(people["coach"], "coach"))
    assert own.status_code == 200
    assert own.json()["coach_id"] == people["coach"]
    assert own.json()["completed_bookings"] == 0

    other = client.get(
        f"/api/v1/bookings/earnings?coach_id={people['coach']}", headers=token_for(people["client"], "client")
    )
    assert other.status_code == 403
