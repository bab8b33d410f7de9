"""
Dashboard application state.

One ``AppState`` value is owned by the dashboard controller and handed to the
sync loop, the marker reconciler and the stop selection flows. Nothing in the
client reads or writes ambient globals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from vehicle_feed import Direction, Vehicle


# Display regions. Each poll task writes only its own regions.
REGION_INBOUND_PREDICTIONS = "inbound-predictions"
REGION_OUTBOUND_PREDICTIONS = "outbound-predictions"
REGION_INBOUND_STOP = "inbound-stop"
REGION_OUTBOUND_STOP = "outbound-stop"
REGION_WEATHER = "weather"
REGION_CLOCK = "update-time"
REGION_VEHICLES = "vehicles"

PREDICTION_REGIONS = {
    Direction.INBOUND: REGION_INBOUND_PREDICTIONS,
    Direction.OUTBOUND: REGION_OUTBOUND_PREDICTIONS,
}
STOP_REGIONS = {
    Direction.INBOUND: REGION_INBOUND_STOP,
    Direction.OUTBOUND: REGION_OUTBOUND_STOP,
}


@dataclass
class Region:
    status: str = "loading"  # loading | ok | empty | error
    title: Optional[str] = None
    lines: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    def show(self, lines: Iterable[str], *, title: Optional[str] = None, now: Optional[datetime] = None) -> None:
        self.lines = list(lines)
        self.title = title
        self.status = "ok" if self.lines else "empty"
        self.updated_at = now

    def show_error(self, *messages: str, now: Optional[datetime] = None) -> None:
        self.status = "error"
        self.title = None
        self.lines = list(messages)
        self.updated_at = now


@dataclass
class SelectionState:
    inbound_stop_id: str
    outbound_stop_id: str
    known_lines: Tuple[str, ...]
    enabled_lines: Set[str] = field(default_factory=set)

    @classmethod
    def defaults(cls, known_lines: Iterable[str], inbound_stop_id: str, outbound_stop_id: str) -> "SelectionState":
        lines = tuple(known_lines)
        return cls(
            inbound_stop_id=inbound_stop_id,
            outbound_stop_id=outbound_stop_id,
            known_lines=lines,
            enabled_lines=set(lines),
        )

    def stop_id(self, direction: Direction) -> str:
        return self.inbound_stop_id if direction is Direction.INBOUND else self.outbound_stop_id

    def commit_stop(self, direction: Direction, stop_id: str) -> None:
        if direction is Direction.INBOUND:
            self.inbound_stop_id = stop_id
        else:
            self.outbound_stop_id = stop_id

    def set_line_enabled(self, line: str, enabled: bool) -> None:
        if line not in self.known_lines:
            raise ValueError(f"unknown line {line!r}")
        if enabled:
            self.enabled_lines.add(line)
        else:
            self.enabled_lines.discard(line)

    def toggle_line(self, line: str) -> bool:
        enabled = line not in self.enabled_lines
        self.set_line_enabled(line, enabled)
        return enabled

    def is_line_enabled(self, line: str) -> bool:
        return line in self.enabled_lines


@dataclass
class Marker:
    vehicle_id: str
    line: str
    latitude: float
    longitude: float
    color: Optional[str]
    direction_label: Optional[str]  # "in" / "out"
    popup_title: str
    popup_body: str

    @property
    def label(self) -> str:
        return self.vehicle_id[:1]


@dataclass
class MapState:
    markers: Dict[str, Marker] = field(default_factory=dict)
    open_popup: Optional[str] = None
    stop_features: List[Dict[str, Any]] = field(default_factory=list)
    route_lines: Dict[str, List[Tuple[float, float]]] = field(default_factory=dict)
    loaded: bool = True


@dataclass
class AppState:
    selection: SelectionState
    display: Dict[str, Region] = field(default_factory=dict)
    map: MapState = field(default_factory=MapState)
    vehicles: List[Vehicle] = field(default_factory=list)

    def region(self, name: str) -> Region:
        region = self.display.get(name)
        if region is None:
            region = Region()
            self.display[name] = region
        return region
