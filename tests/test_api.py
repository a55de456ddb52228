"""API tests using FastAPI TestClient against an in-memory engine."""
import pytest
from fastapi.testclient import TestClient

from organmatch.main import create_app
from organmatch.schemas.donor import OrganStatus, OrganType, Urgency

from conftest import HOSPITAL_SIGNATURE, build_donor, build_recipient


@pytest.fixture
def client(settings, engine):
    engine.registry.add_donor(build_donor(
        "d1", organs={OrganType.KIDNEY: OrganStatus.REGISTERED, OrganType.LIVER: OrganStatus.REGISTERED}
    ))
    engine.registry.add_recipient(build_recipient("r-kidney", organ_needed=OrganType.KIDNEY))
    engine.registry.add_recipient(build_recipient("r-liver", organ_needed=OrganType.LIVER, urgency=Urgency.URGENT))
    with TestClient(create_app(settings, engine=engine)) as test_client:
        yield test_client


def _confirm(client):
    response = client.post("/api/v1/deaths/confirm", json={
        "donor_id": "d1", "certificate_hash": "cert-hash", "signature": HOSPITAL_SIGNATURE,
    })
    assert response.status_code == 200
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Request-ID" in response.headers


def test_death_confirmation_flow(client):
    summary = _confirm(client)
    assert summary["created_count"] == 2
    assert summary["already_confirmed"] is False

    matches = client.get("/api/v1/matches/", params={"state": "pending"}).json()
    assert len(matches) == 2
    kidney = next(m for m in matches if m["organ"] == "kidney")

    accepted = client.post(f"/api/v1/matches/{kidney['id']}/accept", json={"actor": "recipient-hospital"})
    assert accepted.status_code == 200
    assert accepted.json()["state"] == "accepted"

    completed = client.post(f"/api/v1/matches/{kidney['id']}/complete", json={"actor": "donor-hospital"})
    assert completed.json()["state"] == "completed"

    notifications = client.get(f"/api/v1/matches/{kidney['id']}/notifications").json()
    assert len(notifications) == 12
    assert all(n["delivered"] for n in notifications)


def test_unauthorized_death_confirmation(client):
    response = client.post("/api/v1/deaths/confirm", json={
        "donor_id": "d1", "certificate_hash": "cert-hash", "signature": "forged",
    })
    assert response.status_code == 403
    assert response.json()["error"] == "UnauthorizedError"


def test_invalid_transition_is_conflict(client):
    _confirm(client)
    match = client.get("/api/v1/matches/").json()[0]
    response = client.post(f"/api/v1/matches/{match['id']}/complete", json={"actor": "donor-hospital"})
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateError"


def test_withdraw_without_reason_is_unprocessable(client):
    _confirm(client)
    match = client.get("/api/v1/matches/").json()[0]
    client.post(f"/api/v1/matches/{match['id']}/accept", json={"actor": "recipient-hospital"})

    response = client.post(f"/api/v1/matches/{match['id']}/reject", json={"actor": "recipient-hospital"})
    assert response.status_code == 422

    response = client.post(
        f"/api/v1/matches/{match['id']}/reject", json={"actor": "recipient-hospital", "reason": "unstable"}
    )
    assert response.status_code == 200
    assert response.json()["rejection_reason"] == "unstable"


def test_unknown_match_is_not_found(client):
    response = client.get("/api/v1/matches/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_anonymized_matches(client):
    _confirm(client)
    rows = client.get("/api/v1/matches/anonymized").json()
    assert len(rows) == 2
    assert all("donor_id" not in row and "recipient_id" not in row for row in rows)


def test_candidates_and_proposal(client, engine):
    engine.registry.add_donor(build_donor("d2"))

    ranking = client.get("/api/v1/recipients/r-kidney/candidates").json()
    assert [c["donor_id"] for c in ranking["candidates"]] == ["d2"]
    assert ranking["candidates"][0]["score"] == 100

    created = client.post("/api/v1/recipients/r-kidney/matches")
    assert created.status_code == 201
    assert created.json()["donor_id"] == "d2"

    assert client.post("/api/v1/recipients/r-kidney/matches").status_code == 204
    assert client.get("/api/v1/recipients/nobody/candidates").status_code == 404


def test_elevations(client):
    created = client.post("/api/v1/elevations/", json={
        "organ": "kidney", "region": "north", "level": "high", "duration_minutes": 60,
    })
    assert created.status_code == 201
    assert created.json()["level"] == "high"

    invalid = client.post("/api/v1/elevations/", json={"organ": "kidney", "level": "extreme"})
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "ValidationError"

    assert len(client.get("/api/v1/elevations/").json()) == 1


def test_party_notifications_and_read_flag(client):
    _confirm(client)

    inbox = client.get("/api/v1/notifications/", params={"address": "r-kidney@patients.example"}).json()
    assert [n["kind"] for n in inbox] == ["match_found"]
    assert inbox[0]["read"] is False

    marked = client.post(f"/api/v1/notifications/{inbox[0]['id']}/read")
    assert marked.status_code == 200
    assert marked.json()["read"] is True

    unread = client.get(
        "/api/v1/notifications/", params={"address": "r-kidney@patients.example", "unread_only": True}
    ).json()
    assert unread == []

    missing = client.post("/api/v1/notifications/00000000-0000-0000-0000-000000000000/read")
    assert missing.status_code == 404
