import sys
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from errors import MalformedUpstreamPayload  # noqa: E402
from predictions import Prediction, StopPredictions  # noqa: E402
from render import (  # noqa: E402
    NO_PREDICTIONS,
    clean_destination,
    format_clock,
    format_minutes,
    format_vehicle_timestamp,
    format_weather,
    prediction_line,
    render_stop_predictions,
    round_half_up,
    weather_icon_class,
)

LA = ZoneInfo("America/Los_Angeles")


def test_format_minutes():
    assert format_minutes(0) == "Arriving"
    assert format_minutes(1) == "1 min"
    assert format_minutes(7) == "7 mins"


def test_destination_cleanup():
    assert clean_destination("Embarcadero Station") == "Embarcadero"
    assert clean_destination("Metro Castro Station") == "Castro"
    assert clean_destination("Ocean Beach") == "Ocean Beach"


def test_prediction_lines():
    assert prediction_line(Prediction(0, "Embarcadero Station", at_stop=True)) == "Embarcadero: At Stop"
    assert prediction_line(Prediction(4, "Balboa Park Station")) == "Balboa Park: 4 mins"
    assert render_stop_predictions(StopPredictions("15779", "West Portal Station")) == [NO_PREDICTIONS]


def test_weather_icon_fallback():
    assert weather_icon_class("10n") == "wi-night-alt-rain"
    assert weather_icon_class("99x") == "wi-na"
    assert weather_icon_class(None) == "wi-na"


def _weather():
    base = int(datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc).timestamp())
    return {
        "current": {"main": {"temp": 61.5}, "weather": [{"description": "fog", "icon": "50d"}]},
        "forecast": {
            "list": [
                {"dt": base + i * 3 * 3600, "main": {"temp": 60.4 + i}, "weather": [{"description": "mist"}]}
                for i in range(5)
            ]
        },
    }


def test_format_weather():
    view = format_weather(_weather(), tz=LA)
    assert view["temp"] == "62°F"
    assert view["conditions"] == "fog"
    assert view["icon"] == "wi-fog"
    assert view["forecast"] == "12:00 PM: 60°F, mist | 3:00 PM: 61°F, mist | 6:00 PM: 62°F, mist"


def test_temperatures_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2
    assert round_half_up(61.4) == 61


def test_format_weather_rejects_incomplete_payload():
    with pytest.raises(MalformedUpstreamPayload):
        format_weather({"current": {"main": {}}, "forecast": {"list": []}}, tz=LA)
    with pytest.raises(MalformedUpstreamPayload):
        format_weather({"current": {}}, tz=LA)


def test_clock_and_vehicle_timestamps():
    assert format_clock(datetime(2024, 5, 1, 9, 5, tzinfo=LA)) == "09:05 AM"
    assert format_vehicle_timestamp(1_714_590_000, tz=LA) == "12:00:00 PM"
    assert format_vehicle_timestamp({"low": 1_714_590_005, "high": 0}, tz=LA) == "12:00:05 PM"
    assert format_vehicle_timestamp(None, tz=LA) == "N/A"
