from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from fastapi.testclient import TestClient
from conftest import LONDON, FakeClock, FakePortalClient, build_class, build_portal_config

from gym_sniper.app import create_app
from gym_sniper.domain.models import ClassStatus


NOW = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)


def _build_test_app(settings, tmp_path, api_token=None) -> tuple[TestClient, FakePortalClient]:
    settings = replace(settings, queue_path=tmp_path / "snipes.json", api_token=api_token)
    clock = FakeClock(NOW)
    portal = FakePortalClient(
        clock,
        classes=[
            build_class(101, datetime(2025, 2, 11, 9, 15, tzinfo=LONDON), name="Yoga Flow"),
            build_class(102, datetime(2025, 2, 11, 18, 0, tzinfo=LONDON), name="Spin", trainer="Sam Jones"),
            build_class(
                103,
                datetime(2025, 2, 3, 9, 15, tzinfo=LONDON),
                name="Pilates",
                status=ClassStatus.BOOKED,
            ),
        ],
    )
    app = create_app(settings=settings, portal_config=build_portal_config(), client=portal, clock=clock)
    return TestClient(app), portal


def test_health_and_class_listing(settings, tmp_path):
    client, _ = _build_test_app(settings, tmp_path)

    assert client.get("/health").json()["status"] == "ok"

    response = client.get("/classes", params={"trainer": "jones"})
    assert response.status_code == 200
    payload = response.json()
    assert [item["id"] for item in payload] == [102]
    assert payload[0]["window_opens_at"].startswith("2025-02-04T16:00:00")

    assert client.get("/classes", params={"time": "9am"}).status_code == 422


def test_bookings_and_cancellation(settings, tmp_path):
    client, portal = _build_test_app(settings, tmp_path)

    bookings = client.get("/bookings").json()
    assert [item["id"] for item in bookings] == [103]

    assert client.delete("/bookings/103").status_code == 204
    assert portal.cancelled == [103]
    assert client.delete("/bookings/999").status_code == 409


def test_snipe_queue_lifecycle(settings, tmp_path):
    client, _ = _build_test_app(settings, tmp_path)

    created = client.post("/snipes", json={"class_id": 101})
    assert created.status_code == 201
    assert created.json()["status"] == "queued"

    assert client.post("/snipes", json={"class_id": 101}).status_code == 409
    assert client.post("/snipes", json={"class_id": 102}).status_code == 409
    assert client.post("/snipes", json={"class_id": 999}).status_code == 404
    assert client.post("/snipes", json={"class_id": 0}).status_code == 422

    listed = client.get("/snipes").json()
    assert [item["class_id"] for item in listed] == [101]

    assert client.delete("/snipes/101").status_code == 204
    assert client.delete("/snipes/101").status_code == 404
    assert client.post("/snipes", json={"class_id": 102}).status_code == 201


def test_routes_require_token_when_configured(settings, tmp_path):
    client, _ = _build_test_app(settings, tmp_path, api_token="secret-token")

    assert client.get("/health").status_code == 200
    assert client.get("/snipes").status_code == 401
    assert client.get("/classes", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = client.get("/snipes", headers={"Authorization": "Bearer secret-token"})
    assert response.status_code == 200
    assert response.json() == []
