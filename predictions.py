"""
Predictions Normalizer

Fetches the 511.org StopMonitoring (SIRI) feed for an inbound and an
outbound stop concurrently and reduces each stop's visit list to arrival
predictions sorted by minutes away.

Ingestion is schema-first: the top-level SIRI envelope is validated with
pydantic and fails closed with ``MalformedUpstreamPayload``. Individual
visits are validated one at a time; a visit that does not fit is dropped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import (
    MalformedUpstreamPayload,
    PartialRecordDropped,
    PredictionsUnavailable,
    TrackerError,
)
from route_cache import RouteStopCache


_MICROS_PER_MINUTE = 60_000_000


class MinutesPolicy(str, Enum):
    """How a time-to-arrival is turned into whole minutes."""

    ROUND = "round"  # nearest minute, halves round up (89s -> 1, 90s -> 2)
    FLOOR = "floor"
    CEIL = "ceil"


def minutes_until(arrival: datetime, now: datetime, policy: MinutesPolicy = MinutesPolicy.ROUND) -> int:
    """Whole minutes from ``now`` until ``arrival``, computed on integer microseconds."""
    if arrival.tzinfo is None:
        arrival = arrival.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    micros = (arrival - now) // timedelta(microseconds=1)
    if policy is MinutesPolicy.FLOOR:
        return micros // _MICROS_PER_MINUTE
    if policy is MinutesPolicy.CEIL:
        return -((-micros) // _MICROS_PER_MINUTE)
    return (micros + _MICROS_PER_MINUTE // 2) // _MICROS_PER_MINUTE


# ---------------------------
# SIRI ingestion schema
# ---------------------------
class _SiriModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class MonitoredCall(_SiriModel):
    stop_point_ref: Optional[str] = Field(default=None, alias="StopPointRef")
    stop_point_name: Optional[str] = Field(default=None, alias="StopPointName")
    expected_arrival_time: Optional[datetime] = Field(default=None, alias="ExpectedArrivalTime")
    destination_display: Optional[str] = Field(default=None, alias="DestinationDisplay")
    vehicle_at_stop: Optional[bool] = Field(default=None, alias="VehicleAtStop")

    @field_validator("stop_point_ref", "stop_point_name", "expected_arrival_time", "destination_display", mode="before")
    @classmethod
    def _strip_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("vehicle_at_stop", mode="before")
    @classmethod
    def _parse_at_stop(cls, value: Any) -> Optional[bool]:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return None


class MonitoredVehicleJourney(_SiriModel):
    line_ref: Optional[str] = Field(default=None, alias="LineRef")
    destination_name: Optional[str] = Field(default=None, alias="DestinationName")
    vehicle_ref: Optional[str] = Field(default=None, alias="VehicleRef")
    monitored_call: Optional[MonitoredCall] = Field(default=None, alias="MonitoredCall")

    @field_validator("line_ref", "destination_name", "vehicle_ref", mode="before")
    @classmethod
    def _strip_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class MonitoredStopVisit(_SiriModel):
    monitoring_ref: Optional[str] = Field(default=None, alias="MonitoringRef")
    journey: MonitoredVehicleJourney = Field(alias="MonitoredVehicleJourney")


class StopMonitoringDelivery(_SiriModel):
    # Visits stay raw here so that one bad visit cannot fail the whole delivery.
    monitored_stop_visit: List[Any] = Field(default_factory=list, alias="MonitoredStopVisit")

    @field_validator("monitored_stop_visit", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [value]
        if not isinstance(value, list):
            return []
        return value


class ServiceDelivery(_SiriModel):
    stop_monitoring_delivery: List[StopMonitoringDelivery] = Field(
        default_factory=list, alias="StopMonitoringDelivery"
    )

    @field_validator("stop_monitoring_delivery", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value


class StopMonitoringResponse(_SiriModel):
    service_delivery: ServiceDelivery = Field(alias="ServiceDelivery")


def parse_stop_monitoring(payload: Any) -> StopMonitoringResponse:
    try:
        return StopMonitoringResponse.model_validate(payload)
    except ValidationError as exc:
        raise MalformedUpstreamPayload(
            f"stop monitoring payload lacks a usable ServiceDelivery: {exc.error_count()} errors"
        ) from exc


# ---------------------------
# Normalized output
# ---------------------------
@dataclass(frozen=True)
class Prediction:
    minutes: int
    destination: str
    at_stop: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"minutes": self.minutes, "destination": self.destination, "atStop": self.at_stop}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Prediction":
        try:
            minutes = int(data["minutes"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedUpstreamPayload(f"prediction record lacks whole minutes: {data!r}") from exc
        return cls(
            minutes=minutes,
            destination=str(data.get("destination") or ""),
            at_stop=bool(data.get("atStop")),
        )


@dataclass
class StopPredictions:
    stop_id: str
    stop_name: str
    predictions: List[Prediction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopId": self.stop_id,
            "stopName": self.stop_name,
            "predictions": [p.to_dict() for p in self.predictions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StopPredictions":
        if not isinstance(data, dict) or not isinstance(data.get("predictions"), list):
            raise MalformedUpstreamPayload("predictions response lacks a predictions list")
        return cls(
            stop_id=str(data.get("stopId") or ""),
            stop_name=str(data.get("stopName") or ""),
            predictions=[Prediction.from_dict(item) for item in data["predictions"]],
        )


@dataclass
class PredictionsResult:
    inbound: StopPredictions
    outbound: StopPredictions

    def to_dict(self) -> Dict[str, Any]:
        return {"inbound": self.inbound.to_dict(), "outbound": self.outbound.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> "PredictionsResult":
        if not isinstance(data, dict) or "inbound" not in data or "outbound" not in data:
            raise MalformedUpstreamPayload("predictions response lacks inbound/outbound")
        return cls(
            inbound=StopPredictions.from_dict(data["inbound"]),
            outbound=StopPredictions.from_dict(data["outbound"]),
        )


def prediction_from_visit(raw_visit: Any, now: datetime, policy: MinutesPolicy) -> Optional[Prediction]:
    """Normalize one visit. Returns ``None`` for a visit that already departed."""
    try:
        visit = MonitoredStopVisit.model_validate(raw_visit)
    except ValidationError as exc:
        raise PartialRecordDropped(f"visit does not match schema ({exc.error_count()} errors)") from exc

    journey = visit.journey
    call = journey.monitored_call
    if call is None or call.expected_arrival_time is None:
        raise PartialRecordDropped("visit has no expected arrival time")

    minutes = minutes_until(call.expected_arrival_time, now, policy)
    if minutes < 0:
        return None

    destination = call.destination_display or journey.destination_name or journey.line_ref or ""
    return Prediction(minutes=minutes, destination=destination, at_stop=bool(call.vehicle_at_stop))


def extract_predictions(
    payload: Any,
    now: Optional[datetime] = None,
    policy: MinutesPolicy = MinutesPolicy.ROUND,
) -> List[Prediction]:
    """Sorted, non-negative predictions for one stop's StopMonitoring payload."""
    response = parse_stop_monitoring(payload)
    now = now or datetime.now(timezone.utc)

    predictions: List[Prediction] = []
    dropped = 0
    for delivery in response.service_delivery.stop_monitoring_delivery:
        for raw_visit in delivery.monitored_stop_visit:
            try:
                prediction = prediction_from_visit(raw_visit, now, policy)
            except PartialRecordDropped:
                dropped += 1
                continue
            if prediction is not None:
                predictions.append(prediction)

    if dropped:
        print(f"[predictions] dropped {dropped} visits without a usable arrival time")
    predictions.sort(key=lambda p: p.minutes)
    return predictions


class PredictionsNormalizer:
    """Fetches both directions concurrently; either failing fails the whole call."""

    def __init__(
        self,
        fetch_stop: Callable[[str], Awaitable[Dict[str, Any]]],
        cache: Optional[RouteStopCache] = None,
        policy: MinutesPolicy = MinutesPolicy.ROUND,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._fetch_stop = fetch_stop
        self._cache = cache
        self.policy = policy
        self._clock = clock

    def _stop_name(self, stop_id: str) -> str:
        default = f"Stop #{stop_id}"
        if self._cache is None:
            return default
        return self._cache.stop_name(stop_id, default)

    async def fetch_predictions(self, inbound_stop_id: str, outbound_stop_id: str) -> PredictionsResult:
        results = await asyncio.gather(
            self._fetch_stop(inbound_stop_id),
            self._fetch_stop(outbound_stop_id),
            return_exceptions=True,
        )
        for stop_id, result in zip((inbound_stop_id, outbound_stop_id), results):
            if isinstance(result, TrackerError):
                print(f"[predictions] stop {stop_id} failed: {result}")
                raise PredictionsUnavailable(
                    f"Failed to fetch predictions for stop {stop_id}",
                    upstream="stop_monitoring",
                    status_code=getattr(result, "status_code", None),
                ) from result
            if isinstance(result, BaseException):
                raise result

        inbound_payload, outbound_payload = results
        now = self._clock()
        return PredictionsResult(
            inbound=StopPredictions(
                stop_id=inbound_stop_id,
                stop_name=self._stop_name(inbound_stop_id),
                predictions=extract_predictions(inbound_payload, now, self.policy),
            ),
            outbound=StopPredictions(
                stop_id=outbound_stop_id,
                stop_name=self._stop_name(outbound_stop_id),
                predictions=extract_predictions(outbound_payload, now, self.policy),
            ),
        )


__all__ = [
    "MinutesPolicy",
    "minutes_until",
    "Prediction",
    "StopPredictions",
    "PredictionsResult",
    "StopMonitoringResponse",
    "parse_stop_monitoring",
    "prediction_from_visit",
    "extract_predictions",
    "PredictionsNormalizer",
]
