"""
Vehicle Feed Gateway

Fetches the GTFS-realtime vehicle position feed, decodes it against the
FeedMessage schema, keeps only the configured train lines and maps each
entity onto a normalized ``Vehicle`` record.

No caching: every call is one upstream round trip. Retrying is left to the
caller's poll cadence.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from errors import MalformedUpstreamPayload, PartialRecordDropped, SchemaNotLoaded
from route_cache import RouteStopCache


DEFAULT_TRAIN_LINES = ("J", "K", "L", "M", "N", "T")

# Values at or above this are epoch milliseconds rather than seconds.
_MS_THRESHOLD = 1_000_000_000_000
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_WORD_MASK = 0xFFFFFFFF


class VehicleStatus(str, Enum):
    INCOMING = "Incoming"
    STOPPED = "Stopped"
    IN_TRANSIT = "In Transit"
    UNKNOWN = "Unknown"

    @classmethod
    def from_code(cls, code: Optional[int]) -> "VehicleStatus":
        return _STATUS_BY_CODE.get(code, cls.UNKNOWN)


_STATUS_BY_CODE: Dict[Optional[int], VehicleStatus] = {
    0: VehicleStatus.INCOMING,
    1: VehicleStatus.STOPPED,
    2: VehicleStatus.IN_TRANSIT,
}


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"

    @classmethod
    def from_direction_id(cls, direction_id: Optional[int]) -> Optional["Direction"]:
        if direction_id == 0:
            return cls.INBOUND
        if direction_id == 1:
            return cls.OUTBOUND
        return None

    @property
    def direction_id(self) -> int:
        return 0 if self is Direction.INBOUND else 1

    @property
    def short_label(self) -> str:
        return "in" if self is Direction.INBOUND else "out"


def wide_timestamp(value: Any) -> Optional[int]:
    """Normalize an upstream timestamp to an exact Python int.

    Accepts a plain integer, a digit string, or the two-word ``{"low", "high"}``
    form some decoders emit for 64-bit values. Floats are never involved.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text) if text.isdigit() else None
    if isinstance(value, dict) and "low" in value and "high" in value:
        try:
            low = int(value["low"]) & _WORD_MASK
            high = int(value["high"]) & _WORD_MASK
        except (TypeError, ValueError):
            return None
        return (high << 32) | low
    return None


def timestamp_to_datetime(value: Any, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Convert a wide timestamp (epoch seconds or milliseconds) with integer arithmetic."""
    ts = wide_timestamp(value)
    if ts is None or ts <= 0:
        return None
    if ts >= _MS_THRESHOLD:
        seconds, millis = divmod(ts, 1000)
    else:
        seconds, millis = ts, 0
    try:
        result = _EPOCH + timedelta(seconds=seconds, milliseconds=millis)
    except OverflowError:
        return None
    return result.astimezone(tz) if tz is not None else result


@dataclass
class Vehicle:
    id: str
    route_id: str
    direction: Optional[Direction]
    latitude: float
    longitude: float
    status: VehicleStatus
    stop_id: Optional[str] = None
    timestamp: Optional[int] = None
    current_stop_sequence: Optional[int] = None
    speed: Optional[float] = None
    readable_status: str = ""

    @property
    def line(self) -> str:
        return self.route_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trainId": self.id,
            "routeId": self.route_id,
            "direction": self.direction.direction_id if self.direction is not None else None,
            "stopId": self.stop_id,
            "currentStopSequence": self.current_stop_sequence,
            "currentStatus": self.status.value,
            "readableStatus": self.readable_status,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed": self.speed,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vehicle":
        """Rebuild a vehicle from the ``/api/vehicles`` JSON shape."""
        train_id = data.get("trainId")
        route_id = data.get("routeId")
        lat = data.get("latitude")
        lon = data.get("longitude")
        if not train_id or not route_id or lat is None or lon is None:
            raise PartialRecordDropped(f"vehicle record {train_id!r} lacks id, route or position")
        status_label = data.get("currentStatus")
        try:
            status = VehicleStatus(status_label)
        except ValueError:
            status = VehicleStatus.UNKNOWN
        direction = data.get("direction")
        return cls(
            id=str(train_id),
            route_id=str(route_id),
            direction=Direction.from_direction_id(direction if isinstance(direction, int) else None),
            latitude=float(lat),
            longitude=float(lon),
            status=status,
            stop_id=data.get("stopId"),
            timestamp=wide_timestamp(data.get("timestamp")),
            current_stop_sequence=data.get("currentStopSequence"),
            speed=data.get("speed"),
            readable_status=str(data.get("readableStatus") or ""),
        )


class FeedSchema:
    """Load-once holder for the GTFS-realtime ``FeedMessage`` type.

    Until :meth:`load` has run, :meth:`decode` raises ``SchemaNotLoaded``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._message_type: Optional[type] = None

    @property
    def is_loaded(self) -> bool:
        return self._message_type is not None

    def load(self, message_type: Optional[type] = None) -> None:
        with self._lock:
            if self._message_type is not None:
                return
            self._message_type = message_type or gtfs_realtime_pb2.FeedMessage
        print(f"[vehicles] loaded feed schema {self._message_type.DESCRIPTOR.full_name}")

    def decode(self, payload: bytes):
        message_type = self._message_type
        if message_type is None:
            raise SchemaNotLoaded("Protobuf schema not loaded")
        message = message_type()
        try:
            message.ParseFromString(payload)
        except DecodeError as exc:
            raise MalformedUpstreamPayload(f"vehicle feed could not be decoded: {exc}") from exc
        return message


def _optional_field(message: Any, name: str) -> Any:
    return getattr(message, name) if message.HasField(name) else None


def vehicle_from_entity(
    entity: Any,
    stop_name: Callable[[Optional[str]], str],
) -> Vehicle:
    """Map one feed entity; raises ``PartialRecordDropped`` when required fields are absent."""
    position = entity.vehicle
    trip = position.trip
    route_id = trip.route_id
    if not position.HasField("position"):
        raise PartialRecordDropped(f"entity {entity.id!r} has no position")

    vehicle_ref = position.vehicle.id if position.HasField("vehicle") else ""
    vehicle_id = vehicle_ref or entity.id
    if not vehicle_id:
        raise PartialRecordDropped("entity has neither a vehicle id nor an entity id")

    # Unset status decodes to the schema default, IN_TRANSIT_TO.
    status = VehicleStatus.from_code(position.current_status)
    stop_id = position.stop_id or None
    return Vehicle(
        id=f"{route_id}{vehicle_id}",
        route_id=route_id,
        direction=Direction.from_direction_id(_optional_field(trip, "direction_id")),
        latitude=position.position.latitude,
        longitude=position.position.longitude,
        status=status,
        stop_id=stop_id,
        timestamp=wide_timestamp(_optional_field(position, "timestamp")),
        current_stop_sequence=_optional_field(position, "current_stop_sequence"),
        speed=_optional_field(position.position, "speed"),
        readable_status=f"{status.value} at {stop_name(stop_id)}",
    )


def decode_vehicle_feed(
    payload: bytes,
    schema: FeedSchema,
    lines: Iterable[str],
    cache: Optional[RouteStopCache] = None,
) -> List[Vehicle]:
    feed = schema.decode(payload)
    wanted: Set[str] = set(lines)

    def stop_name(stop_id: Optional[str]) -> str:
        if cache is None:
            return "Unknown Stop"
        return cache.stop_name(stop_id, "Unknown Stop")

    vehicles: Dict[str, Vehicle] = {}
    dropped = 0
    for entity in feed.entity:
        if not entity.HasField("vehicle") or not entity.vehicle.HasField("trip"):
            continue
        if entity.vehicle.trip.route_id not in wanted:
            continue
        try:
            vehicle = vehicle_from_entity(entity, stop_name)
        except PartialRecordDropped as exc:
            dropped += 1
            print(f"[vehicles] dropped entity: {exc}")
            continue
        existing = vehicles.get(vehicle.id)
        if existing is not None and (existing.timestamp or 0) > (vehicle.timestamp or 0):
            continue
        vehicles[vehicle.id] = vehicle

    if dropped:
        print(f"[vehicles] kept {len(vehicles)} vehicles, dropped {dropped} incomplete entities")
    return list(vehicles.values())


class VehicleFeedGateway:
    """Fetch-and-normalize entry point used by ``GET /api/vehicles``."""

    def __init__(
        self,
        fetch_payload: Callable[[], Any],
        schema: FeedSchema,
        lines: Iterable[str] = DEFAULT_TRAIN_LINES,
        cache: Optional[RouteStopCache] = None,
    ) -> None:
        self._fetch_payload = fetch_payload
        self.schema = schema
        self.lines = tuple(lines)
        self._cache = cache

    async def fetch_vehicle_positions(self) -> List[Vehicle]:
        if not self.schema.is_loaded:
            raise SchemaNotLoaded("Protobuf schema not loaded")
        payload = await self._fetch_payload()
        return decode_vehicle_feed(payload, self.schema, self.lines, self._cache)


__all__ = [
    "DEFAULT_TRAIN_LINES",
    "VehicleStatus",
    "Direction",
    "Vehicle",
    "FeedSchema",
    "VehicleFeedGateway",
    "wide_timestamp",
    "timestamp_to_datetime",
    "vehicle_from_entity",
    "decode_vehicle_feed",
]
