import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from map_layers import pattern_coordinates, rail_line_ids, stop_features  # noqa: E402
from route_cache import RouteStopCache, load_route_cache  # noqa: E402


def test_stop_features_cover_enabled_lines_only():
    cache = load_route_cache()
    features = stop_features(cache, {"K"})
    assert features
    assert {f["properties"]["line"] for f in features} == {"K"}
    west_portal = next(f for f in features if f["properties"]["id"] == "15779")
    assert west_portal["geometry"]["coordinates"] == [-122.4656, 37.74079]
    assert west_portal["properties"]["name"] == "West Portal Station"
    assert west_portal["properties"]["color"] == "#437C93"


def test_stops_without_coordinates_are_skipped():
    cache = RouteStopCache.from_payload(
        {"routes": [{"line": "T", "stops": [{"id": "1", "name": "No Coords"}, {"id": "2", "name": "Ok", "lat": "37.7", "long": "-122.3"}]}]}
    )
    features = stop_features(cache, {"T"}, {"T": "#BF2B45"})
    assert [f["properties"]["id"] for f in features] == ["2"]
    assert features[0]["properties"]["color"] == "#BF2B45"


def test_rail_lines_are_picked_from_line_list():
    lines = [
        {"Id": "14", "LineShortName": "14"},
        {"Id": "KBUS", "LineShortName": "k"},
        {"Id": "N", "LineShortName": "N"},
        {"Id": "N2", "LineShortName": "N"},
        "junk",
    ]
    assert rail_line_ids(lines, ["J", "K", "L", "M", "N", "T"]) == ["K", "N"]


def test_pattern_points_become_lon_lat_pairs():
    payload = {
        "Patterns": {
            "Pattern": {
                "PatternPath": {
                    "Point": [
                        {"Lat": "37.74", "Lon": "-122.46"},
                        {"Lat": 37.75, "Lon": -122.47},
                        {"Lat": "bad", "Lon": "-122.48"},
                    ]
                }
            }
        }
    }
    assert pattern_coordinates(payload) == [(-122.46, 37.74), (-122.47, 37.75)]


def test_pattern_list_uses_first_pattern_with_path():
    payload = {"Patterns": {"Pattern": [{"Name": "short"}, {"PatternPath": {"Point": [{"Lat": "1", "Lon": "2"}]}}]}}
    assert pattern_coordinates(payload) == [(2.0, 1.0)]


def test_missing_pattern_path_yields_nothing():
    assert pattern_coordinates({}) == []
    assert pattern_coordinates({"Patterns": {"Pattern": {"Name": "x"}}}) == []
    assert pattern_coordinates([]) == []
