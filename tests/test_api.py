from __future__ import annotations

import asyncio
from datetime import timedelta

from fastapi.testclient import TestClient

from services.clock import utc_now
from services.measurements import Measurement, measurement_store


def _seed_reading(speed: float = 16.0, direction: float = 100.0) -> None:
    reading = Measurement(
        timestamp=utc_now() - timedelta(minutes=1),
        station_id="pak_nam_pran",
        wind_speed=speed,
        wind_gust=speed + 3,
        max_daily_gust=speed + 6,
        wind_direction=direction,
        wind_direction_avg=direction,
        temperature=29.5,
    )
    asyncio.run(measurement_store.append(reading))


def test_health_and_info(client: TestClient) -> None:
    health = client.get("/api/v1/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    info = client.get("/api/v1/info").json()
    assert info["scheduler_enabled"] is False
    assert info["primary_station"] in info["stations"]


def test_current_is_404_until_a_reading_exists(client: TestClient) -> None:
    assert client.get("/api/v1/wind/current").status_code == 404

    _seed_reading()
    response = client.get("/api/v1/wind/current")

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["windSpeed"] == 16.0
    assert body["data"]["safety"]["windType"] == "onshore"
    assert body["trend"]["trend"] == "insufficient_data"


def test_history_lists_recent_readings(client: TestClient) -> None:
    _seed_reading()
    body = client.get("/api/v1/wind/history", params={"hours": 2}).json()
    assert body["count"] == 1
    assert body["data"][0]["temperature"] == 29.5

    assert client.get("/api/v1/wind/history", params={"hours": 0}).status_code == 422


def test_calibration_round_trip_and_range(client: TestClient) -> None:
    assert client.get("/api/v1/calibration").json()["windDirOffset"] == 0

    updated = client.put("/api/v1/calibration", json={"windDirOffset": -20})
    assert updated.status_code == 200
    assert updated.json() == {"success": True, "windDirOffset": -20}
    assert client.get("/api/v1/calibration").json()["windDirOffset"] == -20

    for bad in (181, -181, "north", 10.4):
        rejected = client.put("/api/v1/calibration", json={"windDirOffset": bad})
        assert rejected.status_code == 400
    assert client.get("/api/v1/calibration").json()["windDirOffset"] == -20


def test_notification_subscription_endpoints(client: TestClient) -> None:
    created = client.post(
        "/api/v1/notifications/subscribe",
        json={"endpoint": "https://push.test/rider", "keys": {"auth": "secret"}},
    )
    assert created.status_code == 201
    assert created.json()["subscription"]["endpoint"] == "https://push.test/rider"

    stats = client.get("/api/v1/notifications/stats").json()
    assert stats["totalSubscriptions"] == 1
    assert stats["notifiedToday"] is False

    removed = client.post("/api/v1/notifications/unsubscribe", json={"endpoint": "https://push.test/rider"})
    assert removed.json()["removed"] is True
    assert client.post("/api/v1/notifications/subscribe", json={"endpoint": ""}).status_code == 422


def test_archive_endpoints_on_empty_store(client: TestClient) -> None:
    assert client.get("/api/v1/archive/days").json()["count"] == 0
    assert client.get("/api/v1/archive/day/2025-03-10").json()["data"] == []
    assert client.get("/api/v1/archive/day/yesterday").status_code == 422

    stats = client.get("/api/v1/archive/statistics", params={"days": 7}).json()
    assert stats["hours_recorded"] == 0
    assert client.get("/api/v1/archive/patterns").json()["data"] == []


def test_jobs_listing_and_manual_trigger(client: TestClient) -> None:
    listing = client.get("/api/v1/jobs").json()
    assert listing["running"] is False
    names = {job["name"] for job in listing["jobs"]}
    assert {"collect", "archive", "notification-reset"} <= names

    run = client.post("/api/v1/jobs/notification-reset/run")
    assert run.status_code == 200
    assert run.json()["status"] == "succeeded"
    assert run.json()["trigger"] == "manual"

    runs = client.get("/api/v1/jobs", params={"job": "notification-reset"}).json()["runs"]
    assert len(runs) == 1
    assert client.post("/api/v1/jobs/nope/run").status_code == 404


def test_root_health_reports_runtime_state(client: TestClient) -> None:
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["scheduler"] is False
    assert body["streamSubscribers"] == 0
    assert client.get("/").json()["api"] == "/api/v1"
