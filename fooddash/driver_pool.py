from __future__ import annotations

import logging
from typing import Iterable, List

from sqlalchemy import select, and_
from sqlalchemy.orm import Session, selectinload

from .geo import haversine_km
from .models import Driver

logger = logging.getLogger(__name__)


class DriverPool:
    """Candidate drivers for a pickup point."""

    def find_available_drivers(
        self,
        db: Session,
        city: str,
        origin_lat: float,
        origin_lng: float,
        max_radius_km: float,
        exclude: Iterable[str] = (),
    ) -> List[Driver]:
        """
        Available + online drivers in `city` with a known position no further
        than `max_radius_km` (inclusive) from the origin, in id order.
        An empty list is a normal outcome.
        """
        excluded = set(exclude)
        drivers = (
            db.execute(
                select(Driver)
                .options(selectinload(Driver.user))
                .where(
                    and_(
                        Driver.is_available.is_(True),
                        Driver.is_online.is_(True),
                        Driver.current_city == city,
                        Driver.current_lat.is_not(None),
                        Driver.current_lng.is_not(None),
                    )
                )
                .order_by(Driver.id)
            )
            .scalars()
            .all()
        )

        nearby = [
            d
            for d in drivers
            if d.id not in excluded
            and haversine_km(origin_lat, origin_lng, d.current_lat, d.current_lng) <= max_radius_km
        ]
        logger.debug(
            f"{len(nearby)}/{len(drivers)} drivers in {city} within {max_radius_km} km of "
            f"({origin_lat}, {origin_lng})"
        )
        return nearby
