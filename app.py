"""
Muni Metro Tracker Service: feed gateway API (FastAPI)

Purpose
=======
Proxy the 511.org real-time feeds for the Muni Metro rail lines, normalize
them into a stable schema, and serve them to the dashboard client.

Endpoints
---------
- GET /api/predictions?inbound=<stop>&outbound=<stop>  arrival predictions for both directions
- GET /api/vehicles                                     decoded GTFS-realtime train positions
- GET /api/weather                                      current conditions + forecast
- GET /api/lines, /api/patterns/{line_id}               upstream line metadata and geometry
- GET /api/config                                       client map token
- GET /train-routes.json                                static stop/route dataset
- GET /v1/health

Run
---
$ uvicorn app:app --reload --port 3000

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import FileResponse, JSONResponse

from errors import (
    MalformedUpstreamPayload,
    SchemaNotLoaded,
    TrackerError,
    UpstreamUnavailable,
    ValidationFailed,
)
from predictions import MinutesPolicy, PredictionsNormalizer
from route_cache import DEFAULT_TRAIN_ROUTES_PATH, RouteStopCache, load_route_cache
from transit_client import TransitApiClient
from vehicle_feed import DEFAULT_TRAIN_LINES, FeedSchema, VehicleFeedGateway
from weather_client import WeatherClient

# ---------------------------
# Config
# ---------------------------
TRAIN_LINES = tuple(
    line.strip().upper()
    for line in os.getenv("TRAIN_LINES", ",".join(DEFAULT_TRAIN_LINES)).split(",")
    if line.strip()
)
TRAIN_ROUTES_PATH = Path(os.getenv("TRAIN_ROUTES_PATH", str(DEFAULT_TRAIN_ROUTES_PATH)))
DEFAULT_INBOUND_STOP = os.getenv("DEFAULT_INBOUND_STOP", "15779")
DEFAULT_OUTBOUND_STOP = os.getenv("DEFAULT_OUTBOUND_STOP", "15780")
MAPBOX_ACCESS_TOKEN = os.getenv("MAPBOX_ACCESS_TOKEN", "")
MINUTES_POLICY = MinutesPolicy(os.getenv("MINUTES_ROUNDING", MinutesPolicy.ROUND.value).strip().lower())

EXPECTED_ENV_KEYS = ("TRANSIT_API_KEY", "WEATHER_API_KEY", "MAPBOX_ACCESS_TOKEN")


def _missing_env_vars() -> list[str]:
    missing: list[str] = []
    for key in EXPECTED_ENV_KEYS:
        if not os.getenv(key):
            missing.append(key)
    return missing


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Muni Metro Tracker")

# Shared by every request; decode fails with SchemaNotLoaded until startup loads it.
vehicle_schema = FeedSchema()


@app.on_event("startup")
async def load_feed_schema() -> None:
    try:
        vehicle_schema.load()
    except Exception as exc:
        print(f"[startup] failed to load vehicle feed schema: {exc}")


@app.on_event("startup")
async def load_static_routes() -> None:
    try:
        app.state.route_cache = load_route_cache(TRAIN_ROUTES_PATH)
    except (OSError, MalformedUpstreamPayload) as exc:
        print(f"[startup] train routes unavailable: {exc}")
        app.state.route_cache = None


@app.on_event("startup")
async def init_upstream_clients() -> None:
    try:
        app.state.transit_client = TransitApiClient.from_env()
    except RuntimeError as exc:
        print(f"[transit] client not configured: {exc}")
        app.state.transit_client = None
    try:
        app.state.weather_client = WeatherClient.from_env()
    except RuntimeError as exc:
        print(f"[weather] client not configured: {exc}")
        app.state.weather_client = None
    missing = _missing_env_vars()
    if missing:
        print(f"[startup] missing environment variables: {', '.join(missing)}")


@app.on_event("shutdown")
async def shutdown_upstream_clients() -> None:
    for name in ("transit_client", "weather_client"):
        client = getattr(app.state, name, None)
        if client is not None:
            await client.aclose()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _route_cache() -> Optional[RouteStopCache]:
    return getattr(app.state, "route_cache", None)


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    if isinstance(exc, SchemaNotLoaded):
        return _error(503, f"Failed to fetch vehicle positions: {exc}")
    if isinstance(exc, ValidationFailed):
        return _error(404, str(exc))
    if isinstance(exc, (UpstreamUnavailable, MalformedUpstreamPayload)):
        return _error(502, f"Upstream feed unavailable: {exc}")
    return _error(500, str(exc))


# ---------------------------
# Health & config
# ---------------------------
@app.get("/v1/health")
async def health():
    cache = _route_cache()
    missing = _missing_env_vars()
    return {
        "ok": vehicle_schema.is_loaded and cache is not None and not missing,
        "schema_loaded": vehicle_schema.is_loaded,
        "stops_loaded": len(cache) if cache is not None else 0,
        "missing_env": missing,
        "lines": list(TRAIN_LINES),
    }


@app.get("/api/config")
async def client_config():
    return {"mapboxToken": MAPBOX_ACCESS_TOKEN, "lines": list(TRAIN_LINES)}


@app.get("/train-routes.json")
async def train_routes():
    if not TRAIN_ROUTES_PATH.exists():
        return _error(404, "Train routes dataset not found")
    return FileResponse(TRAIN_ROUTES_PATH, media_type="application/json")


# ---------------------------
# Real-time feeds
# ---------------------------
@app.get("/api/predictions")
async def predictions(
    inbound: Optional[str] = Query(default=None),
    outbound: Optional[str] = Query(default=None),
):
    inbound_stop_id = (inbound or "").strip() or DEFAULT_INBOUND_STOP
    outbound_stop_id = (outbound or "").strip() or DEFAULT_OUTBOUND_STOP

    client: Optional[TransitApiClient] = getattr(app.state, "transit_client", None)
    if client is None:
        return _error(503, "Transit API key not configured. Please set up your 511.org API key.")

    normalizer = PredictionsNormalizer(client.get_stop_monitoring, cache=_route_cache(), policy=MINUTES_POLICY)
    try:
        result = await normalizer.fetch_predictions(inbound_stop_id, outbound_stop_id)
    except (UpstreamUnavailable, MalformedUpstreamPayload) as exc:
        print(f"[predictions] error fetching predictions: {exc}")
        return _error(502, "Failed to fetch predictions")
    return result.to_dict()


@app.get("/api/vehicles")
async def vehicles():
    client: Optional[TransitApiClient] = getattr(app.state, "transit_client", None)
    if client is None:
        return _error(503, "Transit API key not configured. Please set up your 511.org API key.")

    gateway = VehicleFeedGateway(
        client.get_vehicle_positions,
        vehicle_schema,
        lines=TRAIN_LINES,
        cache=_route_cache(),
    )
    try:
        positions = await gateway.fetch_vehicle_positions()
    except SchemaNotLoaded as exc:
        print(f"[vehicles] request before schema load: {exc}")
        return _error(503, f"Failed to fetch vehicle positions: {exc}")
    except (UpstreamUnavailable, MalformedUpstreamPayload) as exc:
        print(f"[vehicles] error fetching vehicle positions: {exc}")
        return _error(502, f"Failed to fetch vehicle positions: {exc}")
    return {"vehicles": [v.to_dict() for v in positions]}


@app.get("/api/weather")
async def weather():
    client: Optional[WeatherClient] = getattr(app.state, "weather_client", None)
    if client is None:
        return _error(503, "Weather API key not configured")
    try:
        return await client.get_weather()
    except (UpstreamUnavailable, MalformedUpstreamPayload) as exc:
        print(f"[weather] error fetching weather: {exc}")
        return _error(502, "Failed to fetch weather data")


@app.get("/api/lines")
async def lines():
    client: Optional[TransitApiClient] = getattr(app.state, "transit_client", None)
    if client is None:
        return _error(503, "Transit API key not configured. Please set up your 511.org API key.")
    try:
        payload: List[Dict[str, Any]] = await client.get_lines()
    except (UpstreamUnavailable, MalformedUpstreamPayload) as exc:
        print(f"[lines] error fetching lines: {exc}")
        return _error(502, "Failed to fetch transit lines")
    return payload


@app.get("/api/patterns/{line_id}")
async def patterns(line_id: str):
    client: Optional[TransitApiClient] = getattr(app.state, "transit_client", None)
    if client is None:
        return _error(503, "Transit API key not configured. Please set up your 511.org API key.")
    try:
        return await client.get_patterns(line_id)
    except (UpstreamUnavailable, MalformedUpstreamPayload) as exc:
        print(f"[patterns] error fetching patterns for {line_id}: {exc}")
        return _error(502, "Failed to fetch route patterns")
