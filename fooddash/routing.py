from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, NamedTuple, Protocol

import httpx

from .config import settings
from .errors import RoutingError

OSRM_PROFILE = Literal["driving", "cycling", "walking"]


class LatLng(NamedTuple):
    lat: float
    lng: float


@dataclass(frozen=True)
class RouteLeg:
    distance_km: float
    duration_min: float


class RoutingService(Protocol):
    async def route(self, origin: LatLng, destination: LatLng) -> RouteLeg:
        """Road distance/duration between two points; raises RoutingError."""
        ...


class OsrmRoutingService:
    """
    Routing over an OSRM server's /route API.
    """

    def __init__(
        self,
        base_url: str | None = None,
        profile: OSRM_PROFILE = "driving",
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.ROUTING_BASE_URL).rstrip("/")
        self.profile = profile
        self.timeout = timeout if timeout is not None else settings.ROUTING_TIMEOUT_S
        self._transport = transport

    def build_url(self, origin: LatLng, destination: LatLng) -> str:
        # OSRM expects lon,lat order
        return (
            f"{self.base_url}/route/v1/{self.profile}/"
            f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
            "?overview=false&alternatives=false&steps=false"
        )

    async def route(self, origin: LatLng, destination: LatLng) -> RouteLeg:
        url = self.build_url(origin, destination)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.get(url)
        except httpx.HTTPError as exc:
            raise RoutingError(f"OSRM unreachable: {exc!r}") from exc

        if r.status_code != 200:
            raise RoutingError(f"OSRM error: HTTP {r.status_code} - {r.text}")

        try:
            data = r.json()
        except ValueError as exc:
            raise RoutingError("OSRM error: response is not JSON") from exc
        if not isinstance(data, dict):
            raise RoutingError(f"OSRM error: unexpected payload {data!r}")
        if data.get("code") != "Ok" or not data.get("routes"):
            raise RoutingError(f"OSRM error: {data.get('message', 'no routes')}")

        route = data["routes"][0]
        try:
            distance_m = float(route["distance"])   # meters
            duration_s = float(route["duration"])   # seconds
        except (KeyError, TypeError, ValueError) as exc:
            raise RoutingError(f"OSRM error: malformed route {route!r}") from exc
        return RouteLeg(distance_km=distance_m / 1000.0, duration_min=duration_s / 60.0)
