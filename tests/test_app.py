import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
from fastapi.testclient import TestClient
from google.transit import gtfs_realtime_pb2

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from app import app, vehicle_schema  # noqa: E402
from route_cache import load_route_cache  # noqa: E402
from transit_client import TransitApiClient  # noqa: E402
from vehicle_feed import FeedSchema  # noqa: E402
from weather_client import WeatherClient  # noqa: E402


def _vehicle_feed_bytes() -> bytes:
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    for entity_id, route in (("1", "K"), ("2", "38")):
        entity = feed.entity.add()
        entity.id = entity_id
        entity.vehicle.trip.route_id = route
        entity.vehicle.trip.direction_id = 0
        entity.vehicle.vehicle.id = f"20{entity_id}"
        entity.vehicle.position.latitude = 37.74
        entity.vehicle.position.longitude = -122.46
        entity.vehicle.current_status = 1
        entity.vehicle.stop_id = "15779"
    return feed.SerializeToString()


def _stop_monitoring(minutes: int):
    arrival = (datetime.now(timezone.utc) + timedelta(minutes=minutes, seconds=10)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "ServiceDelivery": {
            "StopMonitoringDelivery": {
                "MonitoredStopVisit": [
                    {
                        "MonitoredVehicleJourney": {
                            "LineRef": "K",
                            "MonitoredCall": {
                                "ExpectedArrivalTime": arrival,
                                "DestinationDisplay": "Embarcadero Station",
                                "VehicleAtStop": "",
                            },
                        }
                    }
                ]
            }
        }
    }


def _transit_handler(fail_stop=None):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/StopMonitoring"):
            stop = request.url.params["stopCode"]
            if stop == fail_stop:
                return httpx.Response(500, text="upstream error")
            return httpx.Response(200, json=_stop_monitoring(3 if stop == "15779" else 8))
        if path.endswith("/vehiclepositions"):
            return httpx.Response(200, content=_vehicle_feed_bytes())
        if path.endswith("/lines"):
            return httpx.Response(200, json=[{"Id": "K", "LineShortName": "K"}])
        if path.endswith("/patterns"):
            return httpx.Response(200, json={"Patterns": {"Pattern": {"PatternPath": {"Point": []}}}})
        return httpx.Response(404)

    return handler


def _install(fail_stop=None, transit=True, weather_handler=None):
    app.state.route_cache = load_route_cache()
    app.state.transit_client = (
        TransitApiClient("test-key", client=httpx.AsyncClient(transport=httpx.MockTransport(_transit_handler(fail_stop))))
        if transit
        else None
    )
    app.state.weather_client = (
        WeatherClient("weather-key", client=httpx.AsyncClient(transport=httpx.MockTransport(weather_handler)))
        if weather_handler
        else None
    )
    vehicle_schema.load()
    return TestClient(app)


def test_predictions_for_both_stops():
    client = _install()
    resp = client.get("/api/predictions", params={"inbound": "15779", "outbound": "15780"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["inbound"]["stopName"] == "West Portal Station"
    assert body["inbound"]["predictions"] == [{"minutes": 3, "destination": "Embarcadero Station", "atStop": False}]
    assert body["outbound"]["predictions"][0]["minutes"] == 8


def test_predictions_fail_as_a_unit():
    client = _install(fail_stop="15779")
    resp = client.get("/api/predictions", params={"inbound": "15779", "outbound": "15780"})
    assert resp.status_code == 502
    assert resp.json() == {"error": "Failed to fetch predictions"}


def test_missing_transit_key_is_503():
    client = _install(transit=False)
    assert client.get("/api/predictions").status_code == 503
    assert client.get("/api/vehicles").status_code == 503


def test_vehicles_are_filtered_and_labelled():
    client = _install()
    resp = client.get("/api/vehicles")
    assert resp.status_code == 200
    vehicles = resp.json()["vehicles"]
    assert [v["trainId"] for v in vehicles] == ["K201"]
    assert vehicles[0]["readableStatus"] == "Stopped at West Portal Station"
    assert vehicles[0]["direction"] == 0


def test_vehicles_before_schema_load_is_503(monkeypatch):
    client = _install()
    monkeypatch.setattr(app_module, "vehicle_schema", FeedSchema())
    resp = client.get("/api/vehicles")
    assert resp.status_code == 503
    assert resp.json()["error"].startswith("Failed to fetch vehicle positions")


def test_weather_combines_current_and_forecast():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["zip"] == "94127,us"
        if request.url.path.endswith("/forecast"):
            return httpx.Response(200, json={"list": []})
        return httpx.Response(200, json={"main": {"temp": 60}, "weather": [{"description": "fog", "icon": "50d"}]})

    client = _install(weather_handler=handler)
    resp = client.get("/api/weather")
    assert resp.status_code == 200
    assert resp.json()["forecast"] == {"list": []}


def test_weather_upstream_failure_is_502():
    client = _install(weather_handler=lambda request: httpx.Response(401, json={"message": "bad key"}))
    resp = client.get("/api/weather")
    assert resp.status_code == 502


def test_lines_patterns_and_static_routes():
    client = _install()
    assert client.get("/api/lines").json() == [{"Id": "K", "LineShortName": "K"}]
    assert "Patterns" in client.get("/api/patterns/K").json()
    routes = client.get("/train-routes.json").json()
    assert {r["line"] for r in routes["routes"]} == {"J", "K", "L", "M", "N", "T"}


def test_health_reports_schema_and_stops():
    client = _install()
    body = client.get("/v1/health").json()
    assert body["schema_loaded"] is True
    assert body["stops_loaded"] > 0
    assert body["lines"] == ["J", "K", "L", "M", "N", "T"]
