"""
Driver assignment workflow.

An order that needs a driver goes through: candidate lookup (DriverPool),
route-based scoring (AssignmentScorer), an atomic commit that claims both the
driver and the order, and finally best-effort SMS notifications. Every
expected failure comes back as a failed `AssignmentResult`, never an exception.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Sequence

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from .channel import TrackingChannel
from .config import settings
from .db import db_session
from .driver_pool import DriverPool
from .errors import (
    AssignmentConflict,
    DriverNotFound,
    FoodDashError,
    GatewayFailure,
    NoDriversAvailable,
    OrderNotFound,
    OutOfServiceArea,
    RestaurantNotFound,
)
from .gateways import DRIVER_ASSIGNED, NEW_DELIVERY_REQUEST, Notifier
from .geo import GeoCalculator, haversine_km
from .models import Driver, Order, OrderStatus, Restaurant, Tracking, TrackingPhase
from .routing import LatLng
from .scoring import AssignmentScorer, ScoredCandidate
from .util import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriverSummary:
    id: str
    name: str
    phone: str | None
    vehicle_type: str
    vehicle_number: str | None
    rating: float

    @classmethod
    def of(cls, driver: Driver) -> "DriverSummary":
        return cls(
            id=driver.id,
            name=driver.name,
            phone=driver.phone,
            vehicle_type=driver.vehicle_type,
            vehicle_number=driver.vehicle_number,
            rating=driver.rating,
        )


@dataclass
class AssignmentResult:
    order_id: str
    success: bool
    driver: DriverSummary | None = None
    estimated_arrival_min: int | None = None
    distance_km: float | None = None
    delivery_fee: Decimal | None = None
    score: float | None = None
    error: FoodDashError | None = None
    notifications: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def failed(cls, order_id: str, error: FoodDashError) -> "AssignmentResult":
        return cls(order_id=order_id, success=False, error=error)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None


@dataclass
class LocationUpdateResult:
    driver_id: str
    success: bool
    order_id: str | None = None
    published: bool = False
    error: FoodDashError | None = None


@dataclass
class DeliveryEstimate:
    success: bool
    distance_km: float | None = None
    prep_time_min: int | None = None
    delivery_time_min: int | None = None
    total_time_min: int | None = None
    quoted_time_min: int | None = None  # includes the safety buffer
    delivery_fee: Decimal | None = None
    fallback: bool = False
    error: FoodDashError | None = None


@dataclass
class _Committed:
    """What notifications and the result need once the transaction is closed."""
    candidate: ScoredCandidate
    summary: DriverSummary
    delivery_fee: Decimal | None
    messages: List[tuple] = field(default_factory=list)


class AssignmentOrchestrator:
    def __init__(
        self,
        geo: GeoCalculator,
        pool: DriverPool,
        scorer: AssignmentScorer,
        notifier: Notifier,
        channel: TrackingChannel,
        *,
        session_factory=None,
        max_radius_km: float | None = None,
        notify_timeout: float | None = None,
        reassign_policy: str | None = None,
    ):
        self.geo = geo
        self.pool = pool
        self.scorer = scorer
        self.notifier = notifier
        self.channel = channel
        self.session_factory = session_factory
        self.max_radius_km = max_radius_km if max_radius_km is not None else settings.MAX_DELIVERY_DISTANCE_KM
        self.notify_timeout = notify_timeout if notify_timeout is not None else settings.NOTIFY_TIMEOUT_S
        self.reassign_policy = reassign_policy or settings.REASSIGN_EXHAUSTED_POLICY

    # ----------------------
    # Public operations
    # ----------------------

    async def assign(self, order_id: str) -> AssignmentResult:
        try:
            with db_session(self.session_factory) as db:
                order = self._load_order(db, order_id)
                if order.driver_id is not None:
                    raise AssignmentConflict(f"Order {order_id} already has driver {order.driver_id}")

                ranked = await self._rank_candidates(db, order)
                if not ranked:
                    raise NoDriversAvailable()

                committed = self._commit(
                    db,
                    order,
                    ranked,
                    order_guard=Order.driver_id.is_(None),
                    order_values={"status": OrderStatus.CONFIRMED},
                )
                if committed is None:
                    raise NoDriversAvailable("All candidate drivers were claimed by other orders")
        except FoodDashError as exc:
            logger.info(f"Assignment for order {order_id} not made: {exc.code}")
            return AssignmentResult.failed(order_id, exc)

        logger.info(
            f"Order {order_id} assigned to driver {committed.summary.id} "
            f"(score {committed.candidate.score:.1f}, eta {committed.candidate.eta_min} min)"
        )
        return await self._finish(order_id, committed)

    async def reassign(self, order_id: str, rejected_driver_id: str) -> AssignmentResult:
        """
        Hand an order rejected by `rejected_driver_id` to the next best driver.

        When nobody else is available the rejecting driver is still released;
        the order either keeps pointing at them ("keep") or goes back to
        PENDING without a driver ("release"), per `reassign_policy`.
        """
        try:
            with db_session(self.session_factory) as db:
                order = self._load_order(db, order_id)
                if order.driver_id != rejected_driver_id:
                    raise AssignmentConflict(
                        f"Driver {rejected_driver_id} is not assigned to order {order_id}"
                    )

                db.execute(
                    update(Driver)
                    .where(Driver.id == rejected_driver_id)
                    .values(is_available=True)
                )

                ranked = await self._rank_candidates(db, order, exclude=[rejected_driver_id])
                committed = None
                if ranked:
                    committed = self._commit(
                        db,
                        order,
                        ranked,
                        order_guard=Order.driver_id == rejected_driver_id,
                        order_values={},
                    )
                if committed is None:
                    self._handle_exhausted(db, order)
        except FoodDashError as exc:
            logger.info(f"Reassignment for order {order_id} not made: {exc.code}")
            return AssignmentResult.failed(order_id, exc)

        if committed is None:
            return AssignmentResult.failed(order_id, NoDriversAvailable("No other drivers available"))

        logger.info(f"Order {order_id} reassigned from {rejected_driver_id} to {committed.summary.id}")
        return await self._finish(order_id, committed)

    async def update_driver_location(self, driver_id: str, lat: float, lng: float) -> LocationUpdateResult:
        event = None
        order_id = None
        with db_session(self.session_factory) as db:
            driver = db.get(Driver, driver_id)
            if driver is None:
                return LocationUpdateResult(driver_id=driver_id, success=False, error=DriverNotFound())

            driver.current_lat = lat
            driver.current_lng = lng

            active = (
                db.execute(
                    select(Order)
                    .options(selectinload(Order.tracking))
                    .where(
                        Order.driver_id == driver_id,
                        Order.status.in_(OrderStatus.ACTIVE_DELIVERY),
                    )
                    .order_by(Order.created_at.desc())
                )
                .scalars()
                .first()
            )
            if active is not None:
                order_id = active.id
                now = utcnow()
                event = {
                    "type": "location",
                    "orderId": active.id,
                    "driverId": driver_id,
                    "lat": lat,
                    "lng": lng,
                    "timestamp": now.isoformat(),
                }
                t = active.tracking
                if t is not None:
                    t.driver_lat = lat
                    t.driver_lng = lng
                    if t.current_status == TrackingPhase.HEADING_TO_RESTAURANT:
                        t.distance_km = round(haversine_km(lat, lng, t.restaurant_lat, t.restaurant_lng), 2)
                    else:
                        t.distance_km = round(haversine_km(lat, lng, t.customer_lat, t.customer_lng), 2)
                    t.last_updated = now
                    event["phase"] = t.current_status
                    event["distanceKm"] = t.distance_km

        published = False
        if event is not None:
            try:
                await self.channel.publish(order_id, event)
                published = True
            except (GatewayFailure, asyncio.TimeoutError) as exc:
                logger.warning(f"Tracking publish for order {order_id} failed: {exc!r}")

        return LocationUpdateResult(driver_id=driver_id, success=True, order_id=order_id, published=published)

    async def delivery_estimate(self, restaurant_id: str, location: LatLng) -> DeliveryEstimate:
        with db_session(self.session_factory) as db:
            restaurant = db.get(Restaurant, restaurant_id)
            if restaurant is None:
                return DeliveryEstimate(success=False, error=RestaurantNotFound())
            origin = LatLng(restaurant.lat, restaurant.lng)
            prep = restaurant.preparation_time or settings.AVERAGE_PREP_TIME_MIN

        route = await self.geo.route(origin, location)
        fee = self.geo.delivery_fee(route.distance_km)
        if fee is None:
            return DeliveryEstimate(
                success=False,
                distance_km=route.distance_km,
                fallback=route.fallback,
                error=OutOfServiceArea(
                    f"Delivery address is outside our {self.geo.max_radius_km:g}km service range"
                ),
            )
        return DeliveryEstimate(
            success=True,
            distance_km=route.distance_km,
            prep_time_min=prep,
            delivery_time_min=route.duration_min,
            total_time_min=prep + route.duration_min,
            quoted_time_min=self.geo.estimated_prep_and_delivery_minutes(route.distance_km, prep),
            delivery_fee=fee,
            fallback=route.fallback,
        )

    # ----------------------
    # Internals
    # ----------------------

    def _load_order(self, db: Session, order_id: str) -> Order:
        order = (
            db.execute(
                select(Order)
                .options(
                    selectinload(Order.restaurant),
                    selectinload(Order.customer),
                    selectinload(Order.tracking),
                )
                .where(Order.id == order_id)
            )
            .scalars()
            .first()
        )
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def _rank_candidates(self, db: Session, order: Order, exclude: Sequence[str] = ()) -> List[ScoredCandidate]:
        restaurant = order.restaurant
        drivers = self.pool.find_available_drivers(
            db,
            restaurant.city,
            restaurant.lat,
            restaurant.lng,
            self.max_radius_km,
            exclude=exclude,
        )
        if not drivers:
            return []
        scored = await self.scorer.score_all(drivers, LatLng(restaurant.lat, restaurant.lng))
        return self.scorer.rank(scored)

    def _commit(self, db: Session, order: Order, ranked: Sequence[ScoredCandidate],
                order_guard, order_values: Dict[str, Any]) -> _Committed | None:
        """
        Claim the best still-free driver and the order in one transaction.

        Both claims are conditional UPDATEs, so a concurrent assign that got
        there first makes the rowcount 0 instead of double-booking.
        """
        for cand in ranked:
            driver = cand.driver
            claimed = db.execute(
                update(Driver)
                .where(Driver.id == driver.id, Driver.is_available.is_(True))
                .values(is_available=False)
            ).rowcount
            if not claimed:
                logger.info(f"Driver {driver.id} was claimed concurrently, trying next candidate")
                continue

            took_order = db.execute(
                update(Order)
                .where(Order.id == order.id, order_guard)
                .values(driver_id=driver.id, **order_values)
            ).rowcount
            if not took_order:
                raise AssignmentConflict(f"Order {order.id} was assigned concurrently")

            self._seed_tracking(db, order, cand)
            return self._prepare_followups(order, cand)
        return None

    def _seed_tracking(self, db: Session, order: Order, cand: ScoredCandidate) -> None:
        restaurant = order.restaurant
        tracking = order.tracking
        if tracking is None:
            tracking = Tracking(order_id=order.id)
            db.add(tracking)
        tracking.driver_lat = cand.driver.current_lat
        tracking.driver_lng = cand.driver.current_lng
        tracking.restaurant_lat = restaurant.lat
        tracking.restaurant_lng = restaurant.lng
        tracking.customer_lat = order.delivery_lat
        tracking.customer_lng = order.delivery_lng
        tracking.estimated_time = cand.eta_min
        tracking.distance_km = cand.distance_km
        tracking.current_status = TrackingPhase.HEADING_TO_RESTAURANT
        tracking.last_updated = utcnow()

    def _prepare_followups(self, order: Order, cand: ScoredCandidate) -> _Committed:
        driver = cand.driver
        to_customer_km = haversine_km(
            driver.current_lat, driver.current_lng, order.delivery_lat, order.delivery_lng
        )
        committed = _Committed(
            candidate=cand,
            summary=DriverSummary.of(driver),
            delivery_fee=self.geo.delivery_fee(to_customer_km),
        )
        committed.messages.append((
            NEW_DELIVERY_REQUEST,
            driver.phone,
            {
                "orderNumber": order.order_number,
                "restaurantName": order.restaurant.name,
                "deliveryAddress": order.delivery_address,
                "distanceKm": cand.distance_km,
                "deliveryFee": order.delivery_fee,
            },
        ))
        committed.messages.append((
            DRIVER_ASSIGNED,
            order.customer.phone if order.customer else None,
            {
                "orderNumber": order.order_number,
                "orderId": order.id,
                "driverName": driver.name,
                "vehicleType": driver.vehicle_type,
                "vehicleNumber": driver.vehicle_number,
            },
        ))
        return committed

    def _handle_exhausted(self, db: Session, order: Order) -> None:
        if self.reassign_policy == "release":
            logger.warning(f"No replacement driver for order {order.id}; returning it to PENDING")
            order.driver_id = None
            order.status = OrderStatus.PENDING
            order.tracking = None
        else:
            logger.warning(
                f"No replacement driver for order {order.id}; it stays with driver {order.driver_id} "
                "until resolved manually"
            )

    async def _finish(self, order_id: str, committed: _Committed) -> AssignmentResult:
        outcomes = await asyncio.gather(
            *(self._notify(contact, kind, payload) for kind, contact, payload in committed.messages)
        )
        cand = committed.candidate
        return AssignmentResult(
            order_id=order_id,
            success=True,
            driver=committed.summary,
            estimated_arrival_min=cand.eta_min,
            distance_km=cand.distance_km,
            delivery_fee=committed.delivery_fee,
            score=round(cand.score, 2),
            notifications={kind: ok for (kind, _, _), ok in zip(committed.messages, outcomes)},
        )

    async def _notify(self, contact: str | None, kind: str, payload: Dict[str, Any]) -> bool:
        """Send one notification; any failure is logged and reported as False."""
        if not contact:
            logger.warning(f"No contact number for {kind} notification, skipped")
            return False
        try:
            result = await asyncio.wait_for(
                self.notifier.notify(contact, kind, payload), timeout=self.notify_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"{kind} notification to {contact} timed out")
            return False
        except (GatewayFailure, httpx.HTTPError) as exc:
            logger.error(f"{kind} notification to {contact} failed: {exc!r}")
            return False
        except Exception:
            logger.exception(f"{kind} notification to {contact} failed unexpectedly")
            return False
        if not result.success:
            logger.error(f"{kind} notification to {contact} failed: {result.error}")
        return result.success
