import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from client_state import (  # noqa: E402
    REGION_CLOCK,
    REGION_INBOUND_PREDICTIONS,
    REGION_INBOUND_STOP,
    REGION_OUTBOUND_PREDICTIONS,
    REGION_VEHICLES,
    REGION_WEATHER,
)
from dashboard import (  # noqa: E402
    DashboardController,
    EditStopInput,
    OpenStopModal,
    SaveStop,
    SelectVehicle,
    ToggleLine,
    ValidateStop,
    render_snapshot,
)
from dashboard_api import DashboardApiClient  # noqa: E402
from render import PREDICTIONS_ERROR, VEHICLES_ERROR  # noqa: E402
from route_cache import DEFAULT_TRAIN_ROUTES_PATH  # noqa: E402
from vehicle_feed import Direction  # noqa: E402

FIXED_NOW = datetime(2024, 5, 1, 9, 30, tzinfo=ZoneInfo("America/Los_Angeles"))


def _vehicle(train_id, route):
    return {
        "trainId": train_id,
        "routeId": route,
        "direction": 1,
        "latitude": 37.74,
        "longitude": -122.46,
        "currentStatus": "In Transit",
        "readableStatus": "In Transit at Forest Hill Station",
        "timestamp": 1714580000,
    }


class FakeServer:
    def __init__(self):
        self.fail = set()
        self.prediction_requests = []
        self.vehicles = [_vehicle("K201", "K"), _vehicle("L301", "L")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.lstrip("/") in self.fail or path in self.fail:
            return httpx.Response(500, json={"error": "boom"})
        if path == "/api/config":
            return httpx.Response(200, json={"mapboxToken": "pk.test", "lines": ["J", "K", "L", "M", "N", "T"]})
        if path == "/train-routes.json":
            return httpx.Response(200, content=DEFAULT_TRAIN_ROUTES_PATH.read_bytes())
        if path == "/api/lines":
            return httpx.Response(200, json=[{"Id": "K", "LineShortName": "K"}, {"Id": "38", "LineShortName": "38"}])
        if path == "/api/patterns/K":
            points = [{"Lat": "37.74", "Lon": "-122.46"}, {"Lat": "37.75", "Lon": "-122.47"}]
            return httpx.Response(200, json={"Patterns": {"Pattern": {"PatternPath": {"Point": points}}}})
        if path == "/api/predictions":
            inbound = request.url.params["inbound"]
            outbound = request.url.params["outbound"]
            self.prediction_requests.append((inbound, outbound))
            return httpx.Response(
                200,
                json={
                    "inbound": {
                        "stopId": inbound,
                        "stopName": "West Portal Station",
                        "predictions": [{"minutes": 0, "destination": "Embarcadero Station", "atStop": True}],
                    },
                    "outbound": {"stopId": outbound, "stopName": "West Portal Station", "predictions": []},
                },
            )
        if path == "/api/vehicles":
            return httpx.Response(200, json={"vehicles": self.vehicles})
        if path == "/api/weather":
            return httpx.Response(
                200,
                content=json.dumps(
                    {
                        "current": {"main": {"temp": 58.2}, "weather": [{"description": "fog", "icon": "50d"}]},
                        "forecast": {"list": [{"dt": 1714590000, "main": {"temp": 59}, "weather": [{"description": "mist"}]}]},
                    }
                ),
            )
        return httpx.Response(404)


def _controller(server):
    http = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    api = DashboardApiClient("http://dashboard.test", client=http)
    return DashboardController(api, inbound_stop_id="15779", outbound_stop_id="15780", clock=lambda: FIXED_NOW)


async def _initialized(server):
    controller = _controller(server)
    await controller.initialize()
    return controller


def test_initialize_labels_stops_and_builds_layers():
    controller = asyncio.run(_initialized(FakeServer()))
    state = controller.state
    assert state.region(REGION_INBOUND_STOP).title == "Stop #15779"
    assert state.region(REGION_INBOUND_STOP).lines == ["West Portal Station"]
    assert list(state.map.route_lines) == ["K"]
    assert state.map.route_lines["K"] == [(-122.46, 37.74), (-122.47, 37.75)]
    assert {f["properties"]["line"] for f in state.map.stop_features} == {"J", "K", "L", "M", "N", "T"}
    assert controller.reconciler.line_colors["K"] == "#437C93"


def test_initialize_survives_missing_dataset():
    server = FakeServer()
    server.fail.update({"/train-routes.json", "/api/lines"})
    controller = asyncio.run(_initialized(server))
    assert controller.state.region(REGION_INBOUND_STOP).lines == ["Stop #15779"]
    assert controller.state.map.stop_features == []
    assert controller.state.map.route_lines == {}


def test_poll_cycle_renders_every_region():
    server = FakeServer()

    async def scenario():
        controller = await _initialized(server)
        for name in ("predictions", "weather", "vehicles", "clock"):
            await controller.scheduler.invoke(name)
        return controller

    controller = asyncio.run(scenario())
    state = controller.state
    inbound = state.region(REGION_INBOUND_PREDICTIONS)
    assert inbound.title == "West Portal Station"
    assert inbound.lines == ["Embarcadero: At Stop"]
    assert state.region(REGION_OUTBOUND_PREDICTIONS).lines == ["No predictions available"]
    assert state.region(REGION_WEATHER).lines[0] == "58°F"
    assert state.region(REGION_WEATHER).title == "wi-fog"
    assert state.region(REGION_CLOCK).lines == ["09:30 AM"]
    assert sorted(state.map.markers) == ["K201", "L301"]
    assert state.region(REGION_VEHICLES).status == "ok"
    assert "[markers] 2" in render_snapshot(state)


def test_failed_fetches_show_placeholders_instead_of_stale_data():
    server = FakeServer()

    async def scenario():
        controller = await _initialized(server)
        await controller.scheduler.invoke("predictions")
        await controller.scheduler.invoke("vehicles")
        server.fail.update({"/api/predictions", "/api/vehicles", "/api/weather"})
        for name in ("predictions", "vehicles", "weather"):
            await controller.scheduler.invoke(name)
        return controller

    state = asyncio.run(scenario()).state
    assert state.region(REGION_INBOUND_PREDICTIONS).lines == [PREDICTIONS_ERROR]
    assert state.region(REGION_OUTBOUND_PREDICTIONS).lines == [PREDICTIONS_ERROR]
    assert state.region(REGION_VEHICLES).lines == [VEHICLES_ERROR]
    assert state.map.markers == {}
    assert state.region(REGION_WEATHER).lines == ["Error", "Error loading weather", "Error loading forecast"]


def test_toggle_line_reconciles_markers_and_stop_layer():
    server = FakeServer()

    async def scenario():
        controller = await _initialized(server)
        await controller.scheduler.invoke("vehicles")
        return controller

    controller = asyncio.run(scenario())
    assert controller.dispatch(ToggleLine("L")) is False
    assert sorted(controller.state.map.markers) == ["K201"]
    assert "L" not in {f["properties"]["line"] for f in controller.state.map.stop_features}
    assert controller.dispatch(ToggleLine("L")) is True
    assert sorted(controller.state.map.markers) == ["K201", "L301"]


def test_vehicle_popup_selection():
    server = FakeServer()

    async def scenario():
        controller = await _initialized(server)
        await controller.scheduler.invoke("vehicles")
        return controller

    controller = asyncio.run(scenario())
    assert controller.dispatch(SelectVehicle("K201")) is True
    assert controller.state.map.open_popup == "K201"
    assert controller.state.map.markers["K201"].popup_title == "Train K201"


def test_saving_a_stop_refetches_predictions_for_the_new_stop():
    server = FakeServer()

    async def scenario():
        controller = await _initialized(server)
        controller.start()
        await asyncio.sleep(0)
        await controller.scheduler.wait_idle()

        controller.dispatch(OpenStopModal(Direction.INBOUND))
        controller.dispatch(EditStopInput(Direction.INBOUND, "17109"))
        controller.dispatch(ValidateStop(Direction.INBOUND))
        assert controller.dispatch(SaveStop(Direction.INBOUND)) is True
        await controller.scheduler.wait_idle()
        await controller.stop()
        return controller

    controller = asyncio.run(scenario())
    assert server.prediction_requests == [("15779", "15780"), ("17109", "15780")]
    assert controller.state.selection.inbound_stop_id == "17109"
