from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Sequence

from .config import settings
from .errors import NoDriversAvailable
from .geo import GeoCalculator
from .models import Driver
from .routing import LatLng


@dataclass(frozen=True)
class ScoreWeights:
    proximity: float = 0.5
    rating: float = 0.3
    experience: float = 0.2

    @classmethod
    def from_settings(cls) -> "ScoreWeights":
        return cls(
            proximity=settings.PROXIMITY_WEIGHT,
            rating=settings.RATING_WEIGHT,
            experience=settings.EXPERIENCE_WEIGHT,
        )


@dataclass(frozen=True)
class ScoredCandidate:
    driver: Driver
    distance_km: float
    eta_min: int
    proximity_score: float
    rating_score: float
    experience_score: float
    score: float
    fallback: bool = False


def proximity_score(distance_km: float) -> float:
    """100 at the pickup, -10 per km, floored at 0 (anything past 10 km)."""
    return max(0.0, 100.0 - distance_km * 10.0)


def rating_score(rating: float) -> float:
    return (rating / 5.0) * 100.0


def experience_score(total_deliveries: int) -> float:
    """Saturates at 100 deliveries."""
    return min(100.0, (total_deliveries / 100.0) * 100.0)


def total_score(distance_km: float, rating: float, total_deliveries: int,
                weights: ScoreWeights = ScoreWeights()) -> float:
    return (
        weights.proximity * proximity_score(distance_km)
        + weights.rating * rating_score(rating)
        + weights.experience * experience_score(total_deliveries)
    )


class AssignmentScorer:
    """
    Ranks candidate drivers for a pickup.

    Route lookups fan out concurrently but never more than `concurrency`
    at a time.
    """

    def __init__(self, geo: GeoCalculator, weights: ScoreWeights | None = None,
                 concurrency: int | None = None):
        self.geo = geo
        self.weights = weights or ScoreWeights.from_settings()
        self.concurrency = max(1, concurrency or settings.SCORING_CONCURRENCY)

    async def score(self, driver: Driver, origin: LatLng) -> ScoredCandidate:
        route = await self.geo.route(LatLng(driver.current_lat, driver.current_lng), origin)
        p = proximity_score(route.distance_km)
        r = rating_score(driver.rating or 0.0)
        e = experience_score(driver.total_deliveries or 0)
        total = total_score(route.distance_km, driver.rating or 0.0, driver.total_deliveries or 0, self.weights)
        return ScoredCandidate(
            driver=driver,
            distance_km=route.distance_km,
            eta_min=route.duration_min,
            proximity_score=p,
            rating_score=r,
            experience_score=e,
            score=total,
            fallback=route.fallback,
        )

    async def score_all(self, drivers: Sequence[Driver], origin: LatLng) -> List[ScoredCandidate]:
        """Scores every candidate; output order matches `drivers`."""
        gate = asyncio.Semaphore(self.concurrency)

        async def bounded(d: Driver) -> ScoredCandidate:
            async with gate:
                return await self.score(d, origin)

        return list(await asyncio.gather(*(bounded(d) for d in drivers)))

    @staticmethod
    def rank(scored: Sequence[ScoredCandidate]) -> List[ScoredCandidate]:
        # sorted() is stable, so equal scores keep candidate order
        return sorted(scored, key=lambda c: c.score, reverse=True)

    def select_best(self, scored: Sequence[ScoredCandidate]) -> ScoredCandidate:
        if not scored:
            raise NoDriversAvailable()
        return self.rank(scored)[0]
