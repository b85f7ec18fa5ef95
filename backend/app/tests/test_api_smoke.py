import pytest

from app.schemas.conditions import CurrentWeather, TrafficSummary, WeatherReport
from app.services import monitoring
from app.services.ledger import SnapshotLedger
from app.services.sequencing import AiSequencer, RouteOptimizer


class _Traffic:
    async def fetch_traffic(self, points, bbox=None):
        return TrafficSummary(avg_current_speed=20, avg_free_flow_speed=100, congestion_level="severe", sample_count=3)


class _Weather:
    async def fetch_weather(self, point):
        return WeatherReport(current=CurrentWeather(condition="rain", visibility_km=6))


class RecordingSink:
    def __init__(self):
        self.events = []

    async def send(self, event):
        self.events.append(event)


class _DisabledPlanner:
    enabled = False


@pytest.fixture()
def fake_monitor(monkeypatch):
    monitor = monitoring.FleetMonitor(
        traffic=_Traffic(),
        weather=_Weather(),
        optimizer=RouteOptimizer(ai=AiSequencer(_DisabledPlanner())),
        ledger=SnapshotLedger(),
        sink=RecordingSink(),
    )
    monkeypatch.setattr(monitoring, "_MONITOR", monitor)
    return monitor


def test_api_smoke_flow(client, make_route, fake_monitor):
    route_id = make_route(status="planned")

    route_resp = client.get(f"/api/v1/routes/{route_id}")
    assert route_resp.status_code == 200
    assert route_resp.json()["status"] == "planned"
    assert len(route_resp.json()["stops"]) == 3

    start_resp = client.post(f"/api/v1/routes/{route_id}/start")
    assert start_resp.status_code == 200
    assert start_resp.json()["status"] == "in_progress"

    scan_resp = client.post("/api/v1/monitoring/scan")
    assert scan_resp.status_code == 200
    scan = scan_resp.json()
    assert scan["succeeded"] == 1
    assert scan["skipped"] is False

    latest_resp = client.get(f"/api/v1/routes/{route_id}/conditions/latest")
    assert latest_resp.status_code == 200
    latest = latest_resp.json()
    assert latest["verdict"]["suggested"] is True
    assert latest["traffic"]["congestion_level"] == "severe"
    assert latest["weather"]["current"]["condition"] == "rain"
    assert latest["notification_sent"] is True

    refresh_resp = client.post(f"/api/v1/routes/{route_id}/refresh")
    assert refresh_resp.status_code == 200
    assert refresh_resp.json()["snapshot"]["source"] == "manual"

    history_resp = client.get(f"/api/v1/routes/{route_id}/conditions", params={"hours": 24})
    assert history_resp.status_code == 200
    assert len(history_resp.json()["items"]) == 2

    reopt_resp = client.post(f"/api/v1/routes/{route_id}/reoptimize", params={"apply": "true"})
    assert reopt_resp.status_code == 200
    assert reopt_resp.json()["needed"] is True
    assert reopt_resp.json()["result"]["method"] == "fallback"

    status_resp = client.get("/api/v1/monitoring/status")
    assert status_resp.status_code == 200
    assert status_resp.json()["state"] == "idle"
    assert status_resp.json()["last_summary"]["succeeded"] == 1

    complete_resp = client.post(f"/api/v1/routes/{route_id}/complete")
    assert complete_resp.status_code == 200
    assert complete_resp.json()["status"] == "completed"
    assert {stop["status"] for stop in complete_resp.json()["stops"]} == {"delivered"}


def test_unknown_route_returns_structured_404(client):
    resp = client.get("/api/v1/routes/4242")
    assert resp.status_code == 404
    body = resp.json()
    assert body["error_code"] == "NOT_FOUND"
    assert body["correlation_id"]


def test_latest_conditions_404_before_first_scan(client, make_route):
    route_id = make_route()
    resp = client.get(f"/api/v1/routes/{route_id}/conditions/latest")
    assert resp.status_code == 404


def test_invalid_transition_returns_409(client, make_route):
    route_id = make_route(status="cancelled")
    resp = client.post(f"/api/v1/routes/{route_id}/start")
    assert resp.status_code == 409
    assert resp.json()["details"] == {"current": "cancelled", "target": "in_progress"}


def test_refresh_route_without_coordinates_returns_422(client, make_route, fake_monitor):
    route_id = make_route(stops=[], start=None)
    resp = client.post(f"/api/v1/routes/{route_id}/refresh")
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "NO_COORDINATES"


def test_reoptimize_with_unusable_route_values_returns_422(client, make_route, fake_monitor):
    route_id = make_route(stops=[(-122.41, 37.78, "rush")])
    client.post(f"/api/v1/routes/{route_id}/refresh")

    resp = client.post(f"/api/v1/routes/{route_id}/reoptimize")

    assert resp.status_code == 422
    assert resp.json()["error_code"] == "INVALID_ROUTE_DATA"
