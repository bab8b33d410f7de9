"""
Marker Reconciler

Turns the latest vehicle set and the enabled-line filter into the map's
marker set.

Two strategies:
- ``diff`` (default): add/update/remove by stable vehicle id. Markers that
  survive a poll keep their identity, so an open popup stays open.
- ``replace``: remove every marker and rebuild from scratch. O(n) per poll
  and any open popup is discarded. Fine for a handful of lines, not for a
  large fleet.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional

from client_state import MapState, Marker
from vehicle_feed import Vehicle


class ReconcileStrategy(str, Enum):
    DIFF = "diff"
    REPLACE = "replace"


@dataclass
class ReconcileResult:
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


def marker_for(vehicle: Vehicle, color: Optional[str]) -> Marker:
    return Marker(
        vehicle_id=vehicle.id,
        line=vehicle.route_id,
        latitude=vehicle.latitude,
        longitude=vehicle.longitude,
        color=color,
        direction_label=vehicle.direction.short_label if vehicle.direction is not None else None,
        popup_title=f"Train {vehicle.id}",
        popup_body=vehicle.readable_status,
    )


class MarkerReconciler:
    def __init__(
        self,
        map_state: MapState,
        line_colors: Optional[Mapping[str, str]] = None,
        strategy: ReconcileStrategy = ReconcileStrategy.DIFF,
    ) -> None:
        self.map = map_state
        self.line_colors: Dict[str, str] = dict(line_colors or {})
        self.strategy = strategy

    def reconcile(self, vehicles: Iterable[Vehicle], enabled_lines: Iterable[str]) -> ReconcileResult:
        enabled = set(enabled_lines)
        desired: Dict[str, Vehicle] = {}
        for vehicle in vehicles:
            if vehicle.route_id in enabled:
                desired[vehicle.id] = vehicle

        if self.strategy is ReconcileStrategy.REPLACE:
            return self._replace(desired)
        return self._diff(desired)

    def _replace(self, desired: Dict[str, Vehicle]) -> ReconcileResult:
        result = ReconcileResult(removed=list(self.map.markers))
        self.map.markers.clear()
        self.map.open_popup = None
        for vehicle_id, vehicle in desired.items():
            self.map.markers[vehicle_id] = marker_for(vehicle, self.line_colors.get(vehicle.route_id))
            result.added.append(vehicle_id)
        return result

    def _diff(self, desired: Dict[str, Vehicle]) -> ReconcileResult:
        result = ReconcileResult()
        for vehicle_id in list(self.map.markers):
            if vehicle_id not in desired:
                del self.map.markers[vehicle_id]
                result.removed.append(vehicle_id)
                if self.map.open_popup == vehicle_id:
                    self.map.open_popup = None

        for vehicle_id, vehicle in desired.items():
            fresh = marker_for(vehicle, self.line_colors.get(vehicle.route_id))
            existing = self.map.markers.get(vehicle_id)
            if existing is None:
                result.added.append(vehicle_id)
            elif existing != fresh:
                result.updated.append(vehicle_id)
            self.map.markers[vehicle_id] = fresh
        return result

    def open_popup(self, vehicle_id: str) -> bool:
        """Show one vehicle's popup, closing any other."""
        if vehicle_id not in self.map.markers:
            return False
        self.map.open_popup = vehicle_id
        return True

    def close_popup(self) -> None:
        self.map.open_popup = None


__all__ = ["ReconcileStrategy", "ReconcileResult", "MarkerReconciler", "marker_for"]
