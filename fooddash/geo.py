from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from .config import settings
from .errors import RoutingError
from .routing import LatLng, RoutingService
from .util import to_money

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Haversine distance in kilometers.
    """
    from math import radians, sin, cos, atan2

    phi1 = radians(lat1)
    phi2 = radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lon2 - lon1)

    a = sin(dphi / 2.0) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2.0) ** 2
    c = 2 * atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def urban_speed_kmh(distance_km: float) -> float:
    """
    Average city speed for a trip of this length; short trips see more stops.
    """
    if distance_km > 20:
        return 30.0
    if distance_km >= 10:
        return 25.0
    return 20.0


@dataclass(frozen=True)
class RouteEstimate:
    distance_km: float
    duration_min: int
    success: bool  # True when the routing service answered
    fallback: bool = False


class GeoCalculator:
    """
    Distance, ETA and delivery-fee primitives.

    `routing` is optional; without it every route is a Haversine estimate.
    """

    def __init__(
        self,
        routing: RoutingService | None = None,
        *,
        routing_timeout: float | None = None,
        base_fee: float | None = None,
        per_km_fee: float | None = None,
        free_km: float | None = None,
        max_radius_km: float | None = None,
        buffer_min: int | None = None,
    ):
        self.routing = routing
        self.routing_timeout = routing_timeout if routing_timeout is not None else settings.ROUTING_TIMEOUT_S
        self.base_fee = base_fee if base_fee is not None else settings.DEFAULT_DELIVERY_FEE
        self.per_km_fee = per_km_fee if per_km_fee is not None else settings.DELIVERY_FEE_PER_KM
        self.free_km = free_km if free_km is not None else settings.FREE_DELIVERY_KM
        self.max_radius_km = max_radius_km if max_radius_km is not None else settings.MAX_DELIVERY_DISTANCE_KM
        self.buffer_min = buffer_min if buffer_min is not None else settings.SAFETY_BUFFER_MIN

    def distance(self, a: LatLng, b: LatLng) -> float:
        return haversine_km(a.lat, a.lng, b.lat, b.lng)

    def travel_minutes(self, distance_km: float) -> float:
        return distance_km / urban_speed_kmh(distance_km) * 60.0

    async def route(self, origin: LatLng, destination: LatLng) -> RouteEstimate:
        """
        Road route when the routing service answers in time, straight-line
        estimate otherwise. Never raises.
        """
        if self.routing is not None:
            try:
                leg = await asyncio.wait_for(
                    self.routing.route(origin, destination), timeout=self.routing_timeout
                )
                return RouteEstimate(
                    distance_km=round(leg.distance_km, 2),
                    duration_min=math.ceil(round(leg.duration_min, 4)),
                    success=True,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Routing timed out after {self.routing_timeout}s, using Haversine fallback")
            except RoutingError as exc:
                logger.warning(f"Routing failed ({exc}), using Haversine fallback")
            except Exception:
                logger.exception("Unexpected routing error, using Haversine fallback")

        km = self.distance(origin, destination)
        return RouteEstimate(
            distance_km=round(km, 2),
            duration_min=math.ceil(round(self.travel_minutes(km), 4)),
            success=False,
            fallback=True,
        )

    def delivery_fee(self, distance_km: float) -> Decimal | None:
        """
        Base fee covers the first `free_km`; each further km costs `per_km_fee`.
        None means the distance is outside the service area.
        """
        if distance_km > self.max_radius_km:
            return None
        extra_km = max(0.0, distance_km - self.free_km)
        fee = Decimal(str(self.base_fee)) + Decimal(str(extra_km)) * Decimal(str(self.per_km_fee))
        return to_money(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def estimated_prep_and_delivery_minutes(self, distance_km: float, prep_time_min: int | None = None) -> int:
        prep = prep_time_min if prep_time_min is not None else settings.AVERAGE_PREP_TIME_MIN
        return round(self.travel_minutes(distance_km) + prep + self.buffer_min)
