"""
Route/Stop Cache

Loads the static stop/route dataset (``train-routes.json``) produced by the
offline GTFS generator and answers stop lookups for the rest of the service.

Dataset shape:

    {"routes": [{"line": "K", "color": "#437C93",
                 "points": [[lat, lon], ...],
                 "stops": [{"id": "15779", "name": "...", "lat": "37.74", "long": "-122.46"}]}]}

``color`` and ``points`` are optional. The cache is read-only after load.
"""

from __future__ import annotations

import json
import math
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from errors import MalformedUpstreamPayload, ValidationFailed


_SOURCE_DATASET = Path(__file__).resolve().parent / "data" / "train-routes.json"
# Regular (non-editable) installs put data-files under <prefix>/data.
_INSTALLED_DATASET = Path(sys.prefix) / "data" / "train-routes.json"


def default_train_routes_path(candidates: Iterable[Path] = (_SOURCE_DATASET, _INSTALLED_DATASET)) -> Path:
    """First existing dataset location; the source-tree path when none exists."""
    paths = list(candidates)
    for path in paths:
        if path.exists():
            return path
    return paths[0]


DEFAULT_TRAIN_ROUTES_PATH = default_train_routes_path()


@dataclass(frozen=True)
class Stop:
    id: str
    name: str
    line: str
    lat: Optional[float] = None
    lon: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "line": self.line, "lat": self.lat, "long": self.lon}


@dataclass(frozen=True)
class Route:
    line: str
    color: Optional[str] = None
    points: Tuple[Tuple[float, float], ...] = ()
    stops: Tuple[Stop, ...] = field(default_factory=tuple)


def _coerce_coord(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _parse_points(raw: Any) -> Tuple[Tuple[float, float], ...]:
    if not isinstance(raw, list):
        return ()
    points: List[Tuple[float, float]] = []
    for item in raw:
        if isinstance(item, dict):
            lat = _coerce_coord(item.get("lat"))
            lon = _coerce_coord(item.get("long", item.get("lon")))
        elif isinstance(item, (list, tuple)) and len(item) >= 2:
            lat = _coerce_coord(item[0])
            lon = _coerce_coord(item[1])
        else:
            continue
        if lat is not None and lon is not None:
            points.append((lat, lon))
    return tuple(points)


class RouteStopCache:
    """Stop id -> Stop mapping plus per-line route geometry."""

    def __init__(self, routes: Iterable[Route]):
        self._routes: Dict[str, Route] = {}
        self._stops: Dict[str, Stop] = {}
        for route in routes:
            self._routes[route.line] = route
            for stop in route.stops:
                # A stop served by several lines keeps the last line listed.
                self._stops[stop.id] = stop

    @classmethod
    def from_payload(cls, payload: Any) -> "RouteStopCache":
        if not isinstance(payload, dict) or not isinstance(payload.get("routes"), list):
            raise MalformedUpstreamPayload("train routes dataset is missing a 'routes' list")

        routes: List[Route] = []
        for raw_route in payload["routes"]:
            if not isinstance(raw_route, dict):
                continue
            line = str(raw_route.get("line") or "").strip()
            if not line:
                continue
            stops: List[Stop] = []
            for raw_stop in raw_route.get("stops") or []:
                if not isinstance(raw_stop, dict):
                    continue
                stop_id = raw_stop.get("id")
                name = raw_stop.get("name")
                if not stop_id or not name:
                    continue
                stops.append(
                    Stop(
                        id=str(stop_id),
                        name=str(name),
                        line=line,
                        lat=_coerce_coord(raw_stop.get("lat")),
                        lon=_coerce_coord(raw_stop.get("long", raw_stop.get("lon"))),
                    )
                )
            color = raw_route.get("color")
            routes.append(
                Route(
                    line=line,
                    color=str(color) if color else None,
                    points=_parse_points(raw_route.get("points")),
                    stops=tuple(stops),
                )
            )
        return cls(routes)

    def lookup(self, stop_id: Optional[str]) -> Optional[Stop]:
        """Return the stop for ``stop_id`` or ``None`` when it is not in the dataset."""
        if stop_id is None:
            return None
        return self._stops.get(str(stop_id).strip())

    def require(self, stop_id: str) -> Stop:
        stop = self.lookup(stop_id)
        if stop is None:
            raise ValidationFailed(stop_id)
        return stop

    def stop_name(self, stop_id: Optional[str], default: str) -> str:
        stop = self.lookup(stop_id)
        return stop.name if stop is not None else default

    def route(self, line: str) -> Optional[Route]:
        return self._routes.get(line)

    @property
    def lines(self) -> List[str]:
        return list(self._routes)

    def routes(self) -> List[Route]:
        return list(self._routes.values())

    def stop_ids(self) -> Iterator[str]:
        return iter(self._stops)

    def __contains__(self, stop_id: object) -> bool:
        return isinstance(stop_id, str) and stop_id in self._stops

    def __len__(self) -> int:
        return len(self._stops)


def load_route_cache(path: Union[str, Path, None] = None) -> RouteStopCache:
    """Read the dataset file once and build the cache."""
    source = Path(path) if path is not None else DEFAULT_TRAIN_ROUTES_PATH
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MalformedUpstreamPayload(f"train routes dataset {source} is not valid JSON: {exc}") from exc
    cache = RouteStopCache.from_payload(payload)
    print(f"[route_cache] loaded {len(cache)} stops across {len(cache.lines)} lines from {source}")
    return cache


__all__ = [
    "DEFAULT_TRAIN_ROUTES_PATH",
    "default_train_routes_path",
    "Stop",
    "Route",
    "RouteStopCache",
    "load_route_cache",
]
