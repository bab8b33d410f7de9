"""Async access to the tracker service endpoints from the dashboard client."""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import httpx

from errors import MalformedUpstreamPayload, PartialRecordDropped, UpstreamUnavailable
from predictions import PredictionsResult
from route_cache import RouteStopCache
from vehicle_feed import Vehicle


DEFAULT_DASHBOARD_BASE_URL = "http://localhost:3000"


class DashboardApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_DASHBOARD_BASE_URL,
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_env(cls) -> "DashboardApiClient":
        base_url = (os.getenv("DASHBOARD_BASE_URL") or DEFAULT_DASHBOARD_BASE_URL).strip()
        return cls(base_url=base_url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.get(f"{self._base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"{path} request failed: {exc}", upstream=path) from exc
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"HTTP error! status: {response.status_code}",
                upstream=path,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedUpstreamPayload(f"{path} returned invalid JSON") from exc

    async def get_config(self) -> Dict[str, Any]:
        data = await self._get_json("/api/config")
        if not isinstance(data, dict):
            raise MalformedUpstreamPayload("/api/config returned a non-object")
        return data

    async def get_route_cache(self) -> RouteStopCache:
        return RouteStopCache.from_payload(await self._get_json("/train-routes.json"))

    async def get_predictions(self, inbound_stop_id: str, outbound_stop_id: str) -> PredictionsResult:
        data = await self._get_json(
            "/api/predictions",
            params={"inbound": inbound_stop_id, "outbound": outbound_stop_id},
        )
        return PredictionsResult.from_dict(data)

    async def get_vehicles(self) -> List[Vehicle]:
        data = await self._get_json("/api/vehicles")
        if not isinstance(data, dict) or not isinstance(data.get("vehicles"), list):
            raise MalformedUpstreamPayload("Invalid data structure received from server")
        vehicles: List[Vehicle] = []
        for item in data["vehicles"]:
            try:
                vehicles.append(Vehicle.from_dict(item))
            except (PartialRecordDropped, TypeError, ValueError) as exc:
                print(f"[sync] skipping vehicle record: {exc}")
        return vehicles

    async def get_weather(self) -> Dict[str, Any]:
        data = await self._get_json("/api/weather")
        if not isinstance(data, dict) or "current" not in data or "forecast" not in data:
            raise MalformedUpstreamPayload("weather response lacks current/forecast")
        return data

    async def get_lines(self) -> List[Dict[str, Any]]:
        data = await self._get_json("/api/lines")
        if not isinstance(data, list):
            raise MalformedUpstreamPayload("lines response is not an array")
        return data

    async def get_pattern(self, line_id: str) -> Dict[str, Any]:
        data = await self._get_json(f"/api/patterns/{line_id}")
        if not isinstance(data, dict):
            raise MalformedUpstreamPayload("patterns response is not an object")
        return data
