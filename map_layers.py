"""Stop and route-line layers for the dashboard map."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from route_cache import RouteStopCache


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def stop_features(
    cache: RouteStopCache,
    enabled_lines: Iterable[str],
    line_colors: Optional[Mapping[str, str]] = None,
) -> List[Dict[str, Any]]:
    """GeoJSON point features for every stop of an enabled line that has coordinates."""
    enabled = set(enabled_lines)
    colors = line_colors or {}
    features: List[Dict[str, Any]] = []
    for route in cache.routes():
        if route.line not in enabled:
            continue
        for stop in route.stops:
            if not stop.has_coordinates:
                continue
            features.append(
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [stop.lon, stop.lat]},
                    "properties": {
                        "id": stop.id,
                        "name": stop.name,
                        "line": route.line,
                        "color": colors.get(route.line) or route.color,
                    },
                }
            )
    return features


def rail_line_ids(lines_payload: Iterable[Any], known_lines: Sequence[str]) -> List[str]:
    """Pick the rail lines out of the upstream line list, in upstream order."""
    known = {line.upper() for line in known_lines}
    picked: List[str] = []
    for line in lines_payload:
        if not isinstance(line, dict):
            continue
        short_name = str(line.get("LineShortName") or line.get("Id") or "").strip().upper()
        if short_name in known and short_name not in picked:
            picked.append(short_name)
    return picked


def pattern_coordinates(pattern_payload: Any) -> List[Tuple[float, float]]:
    """Extract ``[(lon, lat), ...]`` from ``Patterns.Pattern.PatternPath.Point``.

    Returns an empty list when the payload carries no pattern path.
    """
    if not isinstance(pattern_payload, dict):
        return []
    patterns = pattern_payload.get("Patterns")
    if not isinstance(patterns, dict):
        return []
    pattern = patterns.get("Pattern")
    if isinstance(pattern, list):
        pattern = next(
            (p for p in pattern if isinstance(p, dict) and isinstance(p.get("PatternPath"), dict)),
            None,
        )
    if not isinstance(pattern, dict):
        return []
    path = pattern.get("PatternPath")
    points = path.get("Point") if isinstance(path, dict) else None
    if not isinstance(points, list):
        return []

    coordinates: List[Tuple[float, float]] = []
    for point in points:
        if not isinstance(point, dict):
            continue
        lon = _as_float(point.get("Lon"))
        lat = _as_float(point.get("Lat"))
        if lon is not None and lat is not None:
            coordinates.append((lon, lat))
    return coordinates


__all__ = ["stop_features", "rail_line_ids", "pattern_coordinates"]
