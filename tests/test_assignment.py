"""
Tests for the assignment / reassignment workflow and location updates.
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from fooddash.assignment import AssignmentOrchestrator
from fooddash.driver_pool import DriverPool
from fooddash.gateways import DRIVER_ASSIGNED, NEW_DELIVERY_REQUEST
from fooddash.models import Driver, Order, OrderStatus, Tracking, TrackingPhase
from fooddash.routing import LatLng
from fooddash.scoring import AssignmentScorer

from .fakes import RESTAURANT_LAT, RESTAURANT_LNG, FakeRouting, RecordingNotifier, north_of


def fetch(session_factory, model, key):
    with session_factory() as s:
        return s.get(model, key)


def tracking_for(session_factory, order_id):
    with session_factory() as s:
        return s.execute(select(Tracking).where(Tracking.order_id == order_id)).scalars().first()


@pytest.fixture
def two_drivers(make_driver):
    make_driver("d_near", km=1, rating=5, deliveries=200, phone="09181110001")
    make_driver("d_mid", km=5, rating=4, deliveries=50, phone="09181110002")


def test_assign_picks_best_driver_and_commits(orchestrator, session_factory, notifier, make_order, two_drivers):
    make_order("or_1")

    result = asyncio.run(orchestrator.assign("or_1"))

    assert result.success is True
    assert result.driver.id == "d_near"
    assert result.driver.phone == "09181110001"
    assert result.distance_km == pytest.approx(1.0, abs=0.01)
    # 1 km at 30 km/h from the fake router
    assert result.estimated_arrival_min == 2
    # driver is 1 km north, customer 2 km south: 3 km, inside the base fee
    assert result.delivery_fee == Decimal("50.00")
    assert result.score == pytest.approx(95.0)

    order = fetch(session_factory, Order, "or_1")
    assert order.driver_id == "d_near"
    assert order.status == OrderStatus.CONFIRMED
    assert fetch(session_factory, Driver, "d_near").is_available is False
    assert fetch(session_factory, Driver, "d_mid").is_available is True

    t = tracking_for(session_factory, "or_1")
    assert t.current_status == TrackingPhase.HEADING_TO_RESTAURANT
    assert t.driver_lat == pytest.approx(north_of(RESTAURANT_LAT, 1))
    assert t.restaurant_lat == RESTAURANT_LAT
    assert t.customer_lat == pytest.approx(north_of(RESTAURANT_LAT, -2))
    assert t.estimated_time == 2

    kinds = {(contact, kind) for contact, kind, _ in notifier.sent}
    assert kinds == {("09181110001", NEW_DELIVERY_REQUEST), ("09175550000", DRIVER_ASSIGNED)}
    assert result.notifications == {NEW_DELIVERY_REQUEST: True, DRIVER_ASSIGNED: True}


def test_assign_unknown_order(orchestrator):
    result = asyncio.run(orchestrator.assign("or_missing"))
    assert result.success is False
    assert result.error_code == "ORDER_NOT_FOUND"


def test_assign_without_drivers_leaves_order_untouched(orchestrator, session_factory, notifier, make_order, make_driver):
    make_order("or_1")
    make_driver("d_off", online=False)

    result = asyncio.run(orchestrator.assign("or_1"))

    assert result.success is False
    assert result.error_code == "NO_DRIVERS_AVAILABLE"
    order = fetch(session_factory, Order, "or_1")
    assert order.driver_id is None
    assert order.status == OrderStatus.PENDING
    assert tracking_for(session_factory, "or_1") is None
    assert notifier.sent == []


def test_assign_refuses_already_assigned_order(orchestrator, make_order, two_drivers):
    make_order("or_1", driver_id="d_mid", status=OrderStatus.CONFIRMED)
    result = asyncio.run(orchestrator.assign("or_1"))
    assert result.error_code == "ASSIGNMENT_CONFLICT"


def test_notification_failure_does_not_roll_back(session_factory, geo, channel, make_order, two_drivers):
    notifier = RecordingNotifier(raise_kinds=[DRIVER_ASSIGNED], fail_kinds=[NEW_DELIVERY_REQUEST])
    orch = AssignmentOrchestrator(
        geo, DriverPool(), AssignmentScorer(geo), notifier, channel,
        session_factory=session_factory, max_radius_km=15, notify_timeout=1.0,
    )
    make_order("or_1")

    result = asyncio.run(orch.assign("or_1"))

    assert result.success is True
    assert result.notifications == {NEW_DELIVERY_REQUEST: False, DRIVER_ASSIGNED: False}
    assert fetch(session_factory, Order, "or_1").driver_id == "d_near"


def test_unexpected_notifier_error_does_not_break_assignment(session_factory, geo, channel, make_order, two_drivers):
    class CrashingNotifier:
        async def notify(self, contact, template_kind, payload):
            raise KeyError("message_id")

    orch = AssignmentOrchestrator(
        geo, DriverPool(), AssignmentScorer(geo), CrashingNotifier(), channel,
        session_factory=session_factory, max_radius_km=15, notify_timeout=1.0,
    )
    make_order("or_1")

    result = asyncio.run(orch.assign("or_1"))

    assert result.success is True
    assert result.notifications == {NEW_DELIVERY_REQUEST: False, DRIVER_ASSIGNED: False}
    assert fetch(session_factory, Order, "or_1").driver_id == "d_near"


def test_one_driver_is_not_given_two_orders(orchestrator, make_order, make_driver):
    make_driver("d_only", km=1)
    make_order("or_1")
    make_order("or_2")

    first = asyncio.run(orchestrator.assign("or_1"))
    second = asyncio.run(orchestrator.assign("or_2"))

    assert first.success is True
    assert second.error_code == "NO_DRIVERS_AVAILABLE"


def test_concurrent_assignments_do_not_share_a_driver(session_factory, channel, notifier, make_order, make_driver):
    from fooddash.geo import GeoCalculator

    geo = GeoCalculator(FakeRouting(delay=0.02), routing_timeout=1.0)
    orch = AssignmentOrchestrator(
        geo, DriverPool(), AssignmentScorer(geo), notifier, channel,
        session_factory=session_factory, max_radius_km=15,
    )
    make_driver("d_only", km=1)
    make_order("or_1")
    make_order("or_2")

    async def both():
        return await asyncio.gather(orch.assign("or_1"), orch.assign("or_2"))

    results = asyncio.run(both())

    assert sorted(r.success for r in results) == [False, True]
    with session_factory() as s:
        holders = s.execute(select(Order.id).where(Order.driver_id == "d_only")).scalars().all()
    assert len(holders) == 1


def test_commit_falls_through_when_best_driver_is_claimed(session_factory, geo, notifier, channel, make_order, two_drivers):
    class RacingPool(DriverPool):
        """Another dispatcher grabs d_near right after the candidate query."""

        def find_available_drivers(self, db, *args, **kwargs):
            drivers = super().find_available_drivers(db, *args, **kwargs)
            db.execute(update(Driver).where(Driver.id == "d_near").values(is_available=False))
            return drivers

    orch = AssignmentOrchestrator(
        geo, RacingPool(), AssignmentScorer(geo), notifier, channel,
        session_factory=session_factory, max_radius_km=15,
    )
    make_order("or_1")

    result = asyncio.run(orch.assign("or_1"))

    assert result.success is True
    assert result.driver.id == "d_mid"


def test_reassign_moves_order_to_next_driver(orchestrator, session_factory, make_order, two_drivers):
    make_order("or_1")
    asyncio.run(orchestrator.assign("or_1"))

    result = asyncio.run(orchestrator.reassign("or_1", "d_near"))

    assert result.success is True
    assert result.driver.id == "d_mid"
    order = fetch(session_factory, Order, "or_1")
    assert order.driver_id == "d_mid"
    assert order.status == OrderStatus.CONFIRMED
    assert fetch(session_factory, Driver, "d_near").is_available is True
    assert fetch(session_factory, Driver, "d_mid").is_available is False
    t = tracking_for(session_factory, "or_1")
    assert t.driver_lat == pytest.approx(north_of(RESTAURANT_LAT, 5))


def test_reassign_without_replacement_keeps_rejecting_driver(orchestrator, session_factory, make_order, make_driver):
    make_driver("d_only", km=1)
    make_order("or_1")
    asyncio.run(orchestrator.assign("or_1"))

    result = asyncio.run(orchestrator.reassign("or_1", "d_only"))

    assert result.success is False
    assert result.error_code == "NO_DRIVERS_AVAILABLE"
    order = fetch(session_factory, Order, "or_1")
    assert order.driver_id == "d_only"
    assert order.status == OrderStatus.CONFIRMED
    assert fetch(session_factory, Driver, "d_only").is_available is True


def test_reassign_without_replacement_release_policy(session_factory, geo, notifier, channel, make_order, make_driver):
    orch = AssignmentOrchestrator(
        geo, DriverPool(), AssignmentScorer(geo), notifier, channel,
        session_factory=session_factory, max_radius_km=15, reassign_policy="release",
    )
    make_driver("d_only", km=1)
    make_order("or_1")
    asyncio.run(orch.assign("or_1"))

    result = asyncio.run(orch.reassign("or_1", "d_only"))

    assert result.error_code == "NO_DRIVERS_AVAILABLE"
    order = fetch(session_factory, Order, "or_1")
    assert order.driver_id is None
    assert order.status == OrderStatus.PENDING
    assert tracking_for(session_factory, "or_1") is None


def test_reassign_by_driver_not_on_order(orchestrator, make_order, two_drivers):
    make_order("or_1")
    asyncio.run(orchestrator.assign("or_1"))
    result = asyncio.run(orchestrator.reassign("or_1", "d_mid"))
    assert result.error_code == "ASSIGNMENT_CONFLICT"


def test_location_update_refreshes_tracking_and_publishes(orchestrator, session_factory, channel, make_order, two_drivers):
    make_order("or_1")
    asyncio.run(orchestrator.assign("or_1"))
    with session_factory() as s, s.begin():
        s.execute(update(Order).where(Order.id == "or_1").values(status=OrderStatus.OUT_FOR_DELIVERY))
        s.execute(
            update(Tracking)
            .where(Tracking.order_id == "or_1")
            .values(current_status=TrackingPhase.HEADING_TO_CUSTOMER)
        )

    async def move():
        queue = channel.subscribe("or_1")
        result = await orchestrator.update_driver_location("d_near", RESTAURANT_LAT, RESTAURANT_LNG)
        return result, queue.get_nowait()

    result, event = asyncio.run(move())

    assert result.success is True
    assert result.order_id == "or_1"
    assert result.published is True
    assert event["type"] == "location"
    assert event["driverId"] == "d_near"
    assert event["lat"] == RESTAURANT_LAT
    assert event["distanceKm"] == pytest.approx(2.0, abs=0.01)

    t = tracking_for(session_factory, "or_1")
    assert t.driver_lat == RESTAURANT_LAT
    assert t.distance_km == pytest.approx(2.0, abs=0.01)
    assert fetch(session_factory, Driver, "d_near").current_lat == RESTAURANT_LAT


def test_location_update_without_active_delivery(orchestrator, session_factory, channel, make_order, two_drivers):
    make_order("or_1")
    asyncio.run(orchestrator.assign("or_1"))  # CONFIRMED is not an active delivery yet

    result = asyncio.run(orchestrator.update_driver_location("d_near", 14.6, 121.0))

    assert result.success is True
    assert result.order_id is None
    assert result.published is False
    assert fetch(session_factory, Driver, "d_near").current_lat == 14.6
    assert tracking_for(session_factory, "or_1").driver_lat == pytest.approx(north_of(RESTAURANT_LAT, 1))


def test_location_update_unknown_driver(orchestrator):
    result = asyncio.run(orchestrator.update_driver_location("d_ghost", 14.6, 121.0))
    assert result.success is False
    assert result.error.code == "DRIVER_NOT_FOUND"


def test_delivery_estimate(orchestrator, restaurant):
    est = asyncio.run(orchestrator.delivery_estimate("r_1", LatLng(north_of(RESTAURANT_LAT, -5), RESTAURANT_LNG)))
    assert est.success is True
    assert est.distance_km == pytest.approx(5.0, abs=0.01)
    assert est.delivery_fee == Decimal("70.00")
    assert est.prep_time_min == 25
    assert est.delivery_time_min == 10
    assert est.total_time_min == 35
    # 5 km at 20 km/h + 25 prep + 5 buffer
    assert est.quoted_time_min == 45


def test_delivery_estimate_outside_service_area(orchestrator, restaurant):
    est = asyncio.run(orchestrator.delivery_estimate("r_1", LatLng(north_of(RESTAURANT_LAT, -20), RESTAURANT_LNG)))
    assert est.success is False
    assert est.error.code == "OUT_OF_SERVICE_AREA"


def test_delivery_estimate_unknown_restaurant(orchestrator):
    est = asyncio.run(orchestrator.delivery_estimate("r_nope", LatLng(RESTAURANT_LAT, RESTAURANT_LNG)))
    assert est.error.code == "RESTAURANT_NOT_FOUND"
