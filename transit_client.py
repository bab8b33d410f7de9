"""Async client for the 511.org transit APIs (stop monitoring, vehicle positions, lines, patterns)."""
from __future__ import annotations

import json
import os
import re
from typing import Any, Dict, List, Optional

import httpx

from errors import MalformedUpstreamPayload, UpstreamUnavailable


DEFAULT_TRANSIT_API_BASE = "https://api.511.org/transit"
_API_KEY_QUERY_RE = re.compile(r"(?i)(api_key=)([^&'\"\s]+)")


def mask_api_key(url: str) -> str:
    """Hide the ``api_key`` query value before a URL reaches the logs."""
    return _API_KEY_QUERY_RE.sub(r"\1***", url)


def decode_json_body(content: bytes, upstream: str) -> Any:
    """Parse an upstream JSON body; 511.org prefixes its responses with a UTF-8 BOM."""
    try:
        return json.loads(content.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedUpstreamPayload(f"{upstream} returned a body that is not JSON: {exc}") from exc


class TransitApiClient:
    """Minimal client for the 511.org open transit data endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_TRANSIT_API_BASE,
        agency: str = "SF",
        operator_id: str = "SFMTA",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._agency = agency
        self._operator_id = operator_id
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_env(cls) -> "TransitApiClient":
        """Build a ``TransitApiClient`` from environment configuration.

        Required:
        * ``TRANSIT_API_KEY`` - 511.org API token.

        Optional:
        * ``TRANSIT_API_BASE`` - defaults to ``https://api.511.org/transit``.
        * ``TRANSIT_AGENCY`` - stop monitoring / vehicle feed agency, default ``SF``.
        * ``TRANSIT_OPERATOR_ID`` - lines / patterns operator, default ``SFMTA``.
        * ``UPSTREAM_TIMEOUT_S`` - per-request timeout in seconds, default 15.
        """
        api_key = (os.getenv("TRANSIT_API_KEY") or "").strip()
        if not api_key:
            raise RuntimeError("Missing required environment variables: TRANSIT_API_KEY")

        return cls(
            api_key=api_key,
            base_url=(os.getenv("TRANSIT_API_BASE") or DEFAULT_TRANSIT_API_BASE).strip(),
            agency=(os.getenv("TRANSIT_AGENCY") or "SF").strip(),
            operator_id=(os.getenv("TRANSIT_OPERATOR_ID") or "SFMTA").strip(),
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

    async def _get(self, path: str, params: Dict[str, str], upstream: str) -> httpx.Response:
        client = await self._ensure_client()
        url = f"{self._base_url}/{path.lstrip('/')}"
        query = {"api_key": self._api_key, **params}
        try:
            response = await client.get(url, params=query)
        except httpx.HTTPError as exc:
            print(f"[transit] {upstream} request failed: {mask_api_key(str(exc))}")
            raise UpstreamUnavailable(f"{upstream} request failed", upstream=upstream) from exc

        if response.status_code >= 400:
            print(
                f"[transit] {upstream} error {response.status_code} "
                f"from {mask_api_key(str(response.request.url))}"
            )
            raise UpstreamUnavailable(
                f"{upstream} returned HTTP {response.status_code}",
                upstream=upstream,
                status_code=response.status_code,
            )
        return response

    async def get_stop_monitoring(self, stop_id: str) -> Dict[str, Any]:
        response = await self._get(
            "StopMonitoring",
            {"agency": self._agency, "stopCode": stop_id, "format": "json"},
            upstream="stop_monitoring",
        )
        payload = decode_json_body(response.content, "stop_monitoring")
        if not isinstance(payload, dict):
            raise MalformedUpstreamPayload("stop_monitoring payload is not an object")
        return payload

    async def get_vehicle_positions(self) -> bytes:
        response = await self._get(
            "vehiclepositions",
            {"agency": self._agency},
            upstream="vehicle_positions",
        )
        return response.content

    async def get_lines(self) -> List[Dict[str, Any]]:
        response = await self._get(
            "lines",
            {"operator_id": self._operator_id, "format": "json"},
            upstream="lines",
        )
        payload = decode_json_body(response.content, "lines")
        if not isinstance(payload, list):
            raise MalformedUpstreamPayload("lines payload is not an array")
        return payload

    async def get_patterns(self, line_id: str) -> Dict[str, Any]:
        response = await self._get(
            "patterns",
            {"operator_id": self._operator_id, "line_id": line_id, "format": "json"},
            upstream="patterns",
        )
        payload = decode_json_body(response.content, "patterns")
        if not isinstance(payload, dict):
            raise MalformedUpstreamPayload("patterns payload is not an object")
        return payload
