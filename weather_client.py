"""Async client for OpenWeather current conditions and forecast."""
from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, Optional

import httpx

from errors import MalformedUpstreamPayload, UpstreamUnavailable
from transit_client import decode_json_body


DEFAULT_WEATHER_API_BASE = "https://api.openweathermap.org/data/2.5"


class WeatherClient:
    def __init__(
        self,
        api_key: str,
        zip_code: str = "94127",
        units: str = "imperial",
        base_url: str = DEFAULT_WEATHER_API_BASE,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._zip_code = zip_code
        self._units = units
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_env(cls) -> "WeatherClient":
        """Build a ``WeatherClient`` from ``WEATHER_API_KEY``, ``WEATHER_ZIP`` and ``WEATHER_UNITS``."""
        api_key = (os.getenv("WEATHER_API_KEY") or "").strip()
        if not api_key:
            raise RuntimeError("Missing required environment variables: WEATHER_API_KEY")
        return cls(
            api_key=api_key,
            zip_code=(os.getenv("WEATHER_ZIP") or "94127").strip(),
            units=(os.getenv("WEATHER_UNITS") or "imperial").strip(),
            base_url=(os.getenv("WEATHER_API_BASE") or DEFAULT_WEATHER_API_BASE).strip(),
            timeout=float(os.getenv("UPSTREAM_TIMEOUT_S", "15")),
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str) -> Dict[str, Any]:
        client = await self._ensure_client()
        params = {"zip": f"{self._zip_code},us", "appid": self._api_key, "units": self._units}
        try:
            response = await client.get(f"{self._base_url}/{path}", params=params)
        except httpx.HTTPError as exc:
            print(f"[weather] {path} request failed: {exc.__class__.__name__}")
            raise UpstreamUnavailable(f"weather {path} request failed", upstream="weather") from exc
        if response.status_code >= 400:
            print(f"[weather] {path} error {response.status_code}")
            raise UpstreamUnavailable(
                f"weather {path} returned HTTP {response.status_code}",
                upstream="weather",
                status_code=response.status_code,
            )
        payload = decode_json_body(response.content, f"weather {path}")
        if not isinstance(payload, dict):
            raise MalformedUpstreamPayload(f"weather {path} payload is not an object")
        return payload

    async def get_weather(self) -> Dict[str, Any]:
        """Return ``{"current": ..., "forecast": ...}`` fetched concurrently."""
        current, forecast = await asyncio.gather(self._get("weather"), self._get("forecast"))
        return {"current": current, "forecast": forecast}
