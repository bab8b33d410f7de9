"""
Muni Metro dashboard controller

Owns the single ``AppState`` and wires the pieces together:
- the poll scheduler (predictions, weather, vehicles, clock),
- the marker reconciler and map layers,
- one stop selection flow per direction.

UI events arrive as small message objects through ``dispatch``; every state
change happens here or in the component the message is routed to.

Run
---
$ DASHBOARD_BASE_URL=http://localhost:3000 python dashboard.py
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from client_state import (
    PREDICTION_REGIONS,
    REGION_CLOCK,
    REGION_VEHICLES,
    REGION_WEATHER,
    AppState,
    SelectionState,
)
from dashboard_api import DashboardApiClient
from errors import TrackerError
from map_layers import pattern_coordinates, rail_line_ids, stop_features
from marker_reconciler import MarkerReconciler, ReconcileStrategy
from predictions import PredictionsResult
from render import (
    DISPLAY_TZ,
    PREDICTIONS_ERROR,
    VEHICLES_ERROR,
    format_clock,
    format_weather,
    render_stop_predictions,
    render_vehicles,
    weather_error,
)
from route_cache import RouteStopCache
from stop_selection import StopSelectionFlow, label_stop
from sync_loop import PollScheduler
from vehicle_feed import DEFAULT_TRAIN_LINES, Direction, Vehicle

# ---------------------------
# Config
# ---------------------------
PREDICTIONS_REFRESH_S = float(os.getenv("PREDICTIONS_REFRESH_S", "60"))
WEATHER_REFRESH_S = float(os.getenv("WEATHER_REFRESH_S", "900"))
VEHICLES_REFRESH_S = float(os.getenv("VEHICLES_REFRESH_S", "60"))
CLOCK_REFRESH_S = float(os.getenv("CLOCK_REFRESH_S", "1"))
DEFAULT_INBOUND_STOP = os.getenv("DEFAULT_INBOUND_STOP", "15779")
DEFAULT_OUTBOUND_STOP = os.getenv("DEFAULT_OUTBOUND_STOP", "15780")


# ---------------------------
# Messages
# ---------------------------
@dataclass(frozen=True)
class ToggleLine:
    line: str


@dataclass(frozen=True)
class OpenStopModal:
    direction: Direction


@dataclass(frozen=True)
class EditStopInput:
    direction: Direction
    text: str


@dataclass(frozen=True)
class ValidateStop:
    direction: Direction


@dataclass(frozen=True)
class SaveStop:
    direction: Direction


@dataclass(frozen=True)
class CloseStopModal:
    direction: Direction


@dataclass(frozen=True)
class SelectVehicle:
    vehicle_id: str


@dataclass(frozen=True)
class ClosePopup:
    pass


Message = Union[
    ToggleLine, OpenStopModal, EditStopInput, ValidateStop, SaveStop, CloseStopModal, SelectVehicle, ClosePopup
]


class DashboardController:
    def __init__(
        self,
        api: DashboardApiClient,
        *,
        inbound_stop_id: str = DEFAULT_INBOUND_STOP,
        outbound_stop_id: str = DEFAULT_OUTBOUND_STOP,
        lines: Optional[List[str]] = None,
        strategy: ReconcileStrategy = ReconcileStrategy.DIFF,
        scheduler: Optional[PollScheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_change: Optional[Callable[[AppState], None]] = None,
    ) -> None:
        self.api = api
        self.state = AppState(
            selection=SelectionState.defaults(lines or DEFAULT_TRAIN_LINES, inbound_stop_id, outbound_stop_id)
        )
        self.cache = RouteStopCache([])
        self.scheduler = scheduler or PollScheduler()
        self.reconciler = MarkerReconciler(self.state.map, strategy=strategy)
        self.flows: Dict[Direction, StopSelectionFlow] = {}
        self._clock = clock or (lambda: datetime.now(DISPLAY_TZ))
        self._on_change = on_change
        self._build_flows()

    # ---------------------------
    # Startup
    # ---------------------------
    async def initialize(self) -> None:
        """Load the stop dataset, label both stops, build map layers, register poll tasks."""
        try:
            config = await self.api.get_config()
        except TrackerError as exc:
            print(f"[startup] dashboard config unavailable: {exc}")
            config = {}
        configured_lines = config.get("lines")
        if isinstance(configured_lines, list) and configured_lines:
            selection = self.state.selection
            self.state.selection = SelectionState.defaults(
                [str(line) for line in configured_lines],
                selection.inbound_stop_id,
                selection.outbound_stop_id,
            )

        try:
            self.cache = await self.api.get_route_cache()
        except TrackerError as exc:
            print(f"[startup] error loading stops: {exc}")
            self.cache = RouteStopCache([])
        self.reconciler.line_colors = {route.line: route.color for route in self.cache.routes() if route.color}
        self._build_flows()

        for direction in Direction:
            label_stop(self.state, direction, self.state.selection.stop_id(direction), self.cache)
        self._rebuild_stop_layer()
        await self._load_route_lines()
        self._register_tasks()

    def _build_flows(self) -> None:
        self.flows = {
            direction: StopSelectionFlow(direction, self.state, self.cache, on_committed=self._stop_committed)
            for direction in Direction
        }

    async def _load_route_lines(self) -> None:
        try:
            lines_payload = await self.api.get_lines()
        except TrackerError as exc:
            print(f"[startup] error fetching route lines: {exc}")
            return
        for line in rail_line_ids(lines_payload, self.state.selection.known_lines):
            try:
                coordinates = pattern_coordinates(await self.api.get_pattern(line))
            except TrackerError as exc:
                print(f"[startup] error fetching pattern for line {line}: {exc}")
                continue
            if coordinates:
                self.state.map.route_lines[line] = coordinates

    def _rebuild_stop_layer(self) -> None:
        self.state.map.stop_features = stop_features(
            self.cache, self.state.selection.enabled_lines, self.reconciler.line_colors
        )

    def _register_tasks(self) -> None:
        if self._has_task("predictions"):
            return
        self.scheduler.add_task(
            "predictions", PREDICTIONS_REFRESH_S, self._fetch_predictions, self._apply_predictions, self._predictions_failed
        )
        self.scheduler.add_task(
            "weather", WEATHER_REFRESH_S, self.api.get_weather, self._apply_weather, self._weather_failed
        )
        self.scheduler.add_task(
            "vehicles", VEHICLES_REFRESH_S, self.api.get_vehicles, self._apply_vehicles, self._vehicles_failed
        )
        self.scheduler.add_task("clock", CLOCK_REFRESH_S, self._tick_clock, self._apply_clock, self._clock_failed)

    def _has_task(self, name: str) -> bool:
        try:
            self.scheduler.task(name)
        except KeyError:
            return False
        return True

    # ---------------------------
    # Poll task handlers
    # ---------------------------
    async def _fetch_predictions(self) -> PredictionsResult:
        selection = self.state.selection
        return await self.api.get_predictions(selection.inbound_stop_id, selection.outbound_stop_id)

    def _apply_predictions(self, result: PredictionsResult) -> None:
        now = self._clock()
        for direction, stop in ((Direction.INBOUND, result.inbound), (Direction.OUTBOUND, result.outbound)):
            self.state.region(PREDICTION_REGIONS[direction]).show(
                render_stop_predictions(stop), title=stop.stop_name, now=now
            )
        self._apply_clock(now)
        self._changed()

    def _predictions_failed(self, exc: Exception) -> None:
        now = self._clock()
        for region in PREDICTION_REGIONS.values():
            self.state.region(region).show_error(PREDICTIONS_ERROR, now=now)
        self._changed()

    def _apply_weather(self, data: Dict[str, Any]) -> None:
        view = format_weather(data)
        self.state.region(REGION_WEATHER).show(
            [view["temp"], view["conditions"], view["forecast"]], title=view["icon"], now=self._clock()
        )
        self._changed()

    def _weather_failed(self, exc: Exception) -> None:
        view = weather_error()
        self.state.region(REGION_WEATHER).show_error(
            view["temp"], view["conditions"], view["forecast"], now=self._clock()
        )
        self._changed()

    def _apply_vehicles(self, vehicles: List[Vehicle]) -> None:
        self.state.vehicles = list(vehicles)
        self.reconciler.reconcile(self.state.vehicles, self.state.selection.enabled_lines)
        self.state.region(REGION_VEHICLES).show(render_vehicles(self.state.vehicles), now=self._clock())
        self._changed()

    def _vehicles_failed(self, exc: Exception) -> None:
        # Stale positions are not kept on screen.
        self.state.vehicles = []
        self.reconciler.reconcile([], self.state.selection.enabled_lines)
        self.state.region(REGION_VEHICLES).show_error(VEHICLES_ERROR, now=self._clock())
        self._changed()

    async def _tick_clock(self) -> datetime:
        return self._clock()

    def _apply_clock(self, now: datetime) -> None:
        self.state.region(REGION_CLOCK).show([format_clock(now)], now=now)

    def _clock_failed(self, exc: Exception) -> None:
        print(f"[sync] clock refresh failed: {exc}")

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self.state)

    def _stop_committed(self, direction: Direction, stop_id: str) -> None:
        if self.scheduler.running:
            self.scheduler.trigger("predictions")

    # ---------------------------
    # Messages
    # ---------------------------
    def dispatch(self, message: Message) -> Any:
        if isinstance(message, ToggleLine):
            enabled = self.state.selection.toggle_line(message.line)
            self.reconciler.reconcile(self.state.vehicles, self.state.selection.enabled_lines)
            self._rebuild_stop_layer()
            return enabled
        if isinstance(message, OpenStopModal):
            return self.flows[message.direction].open()
        if isinstance(message, EditStopInput):
            return self.flows[message.direction].edit(message.text)
        if isinstance(message, ValidateStop):
            return self.flows[message.direction].validate()
        if isinstance(message, SaveStop):
            return self.flows[message.direction].save()
        if isinstance(message, CloseStopModal):
            return self.flows[message.direction].close()
        if isinstance(message, SelectVehicle):
            return self.reconciler.open_popup(message.vehicle_id)
        if isinstance(message, ClosePopup):
            return self.reconciler.close_popup()
        raise TypeError(f"unsupported message {type(message).__name__}")

    # ---------------------------
    # Lifecycle
    # ---------------------------
    def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()


def render_snapshot(state: AppState) -> str:
    out: List[str] = []
    for name, region in state.display.items():
        header = f"[{name}]" + (f" {region.title}" if region.title else "")
        out.append(header)
        out.extend(f"  {line}" for line in region.lines)
    out.append(f"[markers] {len(state.map.markers)} on lines {', '.join(sorted(state.selection.enabled_lines))}")
    return "\n".join(out)


async def run() -> None:
    api = DashboardApiClient.from_env()
    controller = DashboardController(api, on_change=lambda state: print(render_snapshot(state) + "\n"))
    try:
        await controller.initialize()
        controller.start()
        while True:
            await asyncio.sleep(3600)
    finally:
        await controller.stop()
        await api.aclose()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
