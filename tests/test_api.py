import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.setenv("FEEDS_DIR", str(tmp_path / "feeds"))
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "")
    monkeypatch.setenv("SOURCE_RUN_INTERVAL_SECONDS", "0")
    with TestClient(app) as c:
        yield c


SUBMISSION = {
    "title": "Fight for $15 minimum wage rally",
    "address": "Union Square, New York, NY",
    "latitude": 40.7359,
    "longitude": -73.9911,
    "start_time": "2099-05-01T16:00:00Z",
    "hashtags": ["FightFor15"],
}


def test_health(client) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.json()["timestamp"].endswith("Z")


def test_submit_and_fetch_event(client) -> None:
    res = client.post("/api/events", json=SUBMISSION)
    assert res.status_code == 201
    doc = res.json()
    assert doc["status"] == "planned"
    assert doc["source_type"] == "user"
    assert doc["cause"] == "labor"
    assert doc["confidence_score"] == 0.8

    fetched = client.get(f"/api/events/{doc['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["title"] == SUBMISSION["title"]

    duplicate = client.post("/api/events", json=SUBMISSION)
    assert duplicate.status_code == 409


def test_submission_keeps_valid_cause(client) -> None:
    res = client.post("/api/events", json={**SUBMISSION, "cause": "political"})
    assert res.json()["cause"] == "political"


def test_submission_without_coordinates_and_geocoding_disabled(client) -> None:
    body = {k: v for k, v in SUBMISSION.items() if k not in ("latitude", "longitude")}
    res = client.post("/api/events", json=body)
    assert res.status_code == 201
    assert res.json()["latitude"] is None


def test_submission_rejects_end_before_start(client) -> None:
    res = client.post(
        "/api/events", json={**SUBMISSION, "end_time": "2099-05-01T15:00:00Z"}
    )
    assert res.status_code == 422


def test_missing_event_is_404(client) -> None:
    res = client.get("/api/events/does-not-exist")
    assert res.status_code == 404
    assert res.json() == {"error": "not_found"}


def test_query_filters(client) -> None:
    client.post("/api/events", json=SUBMISSION)

    assert client.get("/api/events").json() == []
    planned = client.get("/api/events", params={"status": "planned"}).json()
    assert len(planned) == 1

    nearby = client.get(
        "/api/events",
        params={"status": "planned", "lat": 40.7128, "lng": -74.0060, "radius": 10},
    ).json()
    assert len(nearby) == 1
    assert nearby[0]["distance_km"] < 10

    far = client.get(
        "/api/events",
        params={"status": "planned", "lat": 34.05, "lng": -118.24, "radius": 10},
    ).json()
    assert far == []

    by_cause = client.get(
        "/api/events", params={"status": "planned", "causes": "climate,lgbtq"}
    ).json()
    assert by_cause == []


def test_query_rejects_unknown_status_and_cause(client) -> None:
    assert client.get("/api/events", params={"status": "cancelled"}).status_code == 422
    assert client.get("/api/events", params={"causes": "weather"}).status_code == 422


def test_causes_and_data_sources(client) -> None:
    client.post("/api/events", json=SUBMISSION)
    assert client.get("/api/causes").json() == [{"cause": "labor", "count": 1}]
    assert client.get("/api/data-sources").json() == []


def test_websocket_receives_new_event(client) -> None:
    with client.websocket_connect("/ws") as ws:
        res = client.post("/api/events", json=SUBMISSION)
        message = ws.receive_json()

    assert message["type"] == "new_event"
    assert message["data"]["id"] == res.json()["id"]
