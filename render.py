"""Text formatting for the dashboard regions. No toolkit code lives here."""
from __future__ import annotations

import os
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from errors import MalformedUpstreamPayload
from predictions import Prediction, StopPredictions
from vehicle_feed import Vehicle, timestamp_to_datetime


DISPLAY_TZ = ZoneInfo(os.getenv("DISPLAY_TZ", "America/Los_Angeles"))

NO_PREDICTIONS = "No predictions available"
PREDICTIONS_ERROR = "Error loading predictions"
WEATHER_TEMP_ERROR = "Error"
WEATHER_CONDITIONS_ERROR = "Error loading weather"
WEATHER_FORECAST_ERROR = "Error loading forecast"
VEHICLES_ERROR = "Error loading vehicle positions"
FORECAST_ENTRIES = 3

WEATHER_ICONS = {
    "01d": "wi-day-sunny",
    "01n": "wi-night-clear",
    "02d": "wi-day-cloudy",
    "02n": "wi-night-alt-cloudy",
    "03d": "wi-cloud",
    "03n": "wi-cloud",
    "04d": "wi-cloudy",
    "04n": "wi-cloudy",
    "09d": "wi-showers",
    "09n": "wi-showers",
    "10d": "wi-day-rain",
    "10n": "wi-night-alt-rain",
    "11d": "wi-thunderstorm",
    "11n": "wi-thunderstorm",
    "13d": "wi-snow",
    "13n": "wi-snow",
    "50d": "wi-fog",
    "50n": "wi-fog",
}


def round_half_up(value: float) -> int:
    """Round like a dashboard would (2.5 -> 3, -2.5 -> -2), not banker's rounding."""
    return int((value + 0.5) // 1)


def _hour12(dt: datetime) -> str:
    return dt.strftime("%I").lstrip("0")


def format_minutes(minutes: int) -> str:
    if minutes == 0:
        return "Arriving"
    return f"{minutes} min" if minutes == 1 else f"{minutes} mins"


def clean_destination(destination: str) -> str:
    return destination.replace(" Station", "", 1).replace("Metro ", "", 1)


def prediction_line(prediction: Prediction) -> str:
    status = "At Stop" if prediction.at_stop else format_minutes(prediction.minutes)
    return f"{clean_destination(prediction.destination)}: {status}"


def render_stop_predictions(stop: StopPredictions) -> List[str]:
    if not stop.predictions:
        return [NO_PREDICTIONS]
    return [prediction_line(p) for p in stop.predictions]


def weather_icon_class(icon_code: Optional[str]) -> str:
    return WEATHER_ICONS.get(icon_code or "", "wi-na")


def _conditions(entry: Dict[str, Any]) -> Dict[str, Any]:
    weather = entry.get("weather")
    if not isinstance(weather, list) or not weather or not isinstance(weather[0], dict):
        raise MalformedUpstreamPayload("weather entry has no conditions")
    return weather[0]


def _temperature(entry: Dict[str, Any]) -> int:
    main = entry.get("main")
    if not isinstance(main, dict) or not isinstance(main.get("temp"), (int, float)):
        raise MalformedUpstreamPayload("weather entry has no temperature")
    return round_half_up(main["temp"])


def format_forecast_entry(entry: Dict[str, Any], tz: tzinfo = DISPLAY_TZ) -> str:
    when = datetime.fromtimestamp(int(entry["dt"]), tz=timezone.utc).astimezone(tz)
    return f"{_hour12(when)}:{when:%M} {when:%p}: {_temperature(entry)}°F, {_conditions(entry).get('description', '')}"


def format_weather(data: Dict[str, Any], tz: tzinfo = DISPLAY_TZ) -> Dict[str, str]:
    """Current temperature, conditions, icon class and the next forecast entries.

    Raises ``MalformedUpstreamPayload`` when the payload lacks the fields the
    display needs, so the caller can fall back to the error placeholders.
    """
    current = data.get("current")
    forecast = data.get("forecast")
    if not isinstance(current, dict) or not isinstance(forecast, dict):
        raise MalformedUpstreamPayload("weather payload lacks current/forecast")
    entries = forecast.get("list")
    if not isinstance(entries, list):
        raise MalformedUpstreamPayload("forecast payload lacks a list")

    conditions = _conditions(current)
    try:
        forecast_text = " | ".join(format_forecast_entry(e, tz) for e in entries[:FORECAST_ENTRIES])
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedUpstreamPayload(f"forecast entry unreadable: {exc}") from exc
    return {
        "temp": f"{_temperature(current)}°F",
        "conditions": str(conditions.get("description", "")),
        "icon": weather_icon_class(conditions.get("icon")),
        "forecast": forecast_text,
    }


def weather_error() -> Dict[str, str]:
    return {
        "temp": WEATHER_TEMP_ERROR,
        "conditions": WEATHER_CONDITIONS_ERROR,
        "icon": "wi-na",
        "forecast": WEATHER_FORECAST_ERROR,
    }


def format_clock(now: datetime) -> str:
    return now.strftime("%I:%M %p")


def format_vehicle_timestamp(value: Any, tz: tzinfo = DISPLAY_TZ) -> str:
    when = timestamp_to_datetime(value, tz)
    if when is None:
        return "N/A"
    return f"{_hour12(when)}:{when:%M:%S} {when:%p}"


def vehicle_line(vehicle: Vehicle, tz: tzinfo = DISPLAY_TZ) -> str:
    direction = f" ({vehicle.direction.short_label})" if vehicle.direction is not None else ""
    return f"Train {vehicle.id}{direction}: {vehicle.readable_status}, {format_vehicle_timestamp(vehicle.timestamp, tz)}"


def render_vehicles(vehicles: Sequence[Vehicle], tz: tzinfo = DISPLAY_TZ) -> List[str]:
    return [vehicle_line(v, tz) for v in sorted(vehicles, key=lambda v: v.id)]
