from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fooddash.assignment import AssignmentOrchestrator
from fooddash.channel import InMemoryTrackingChannel
from fooddash.driver_pool import DriverPool
from fooddash.geo import GeoCalculator
from fooddash.models import Base, Driver, Order, OrderStatus, Restaurant, User
from fooddash.scoring import AssignmentScorer
from fooddash.settlement import SettlementScheduler

from .fakes import (
    RESTAURANT_LAT,
    RESTAURANT_LNG,
    FakeRouting,
    RecordingNotifier,
    RecordingPayoutGateway,
    north_of,
)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def restaurant(db):
    owner = User(id="u_owner", first_name="Maria", last_name="Santos", phone="09171234567", role="restaurant")
    r = Restaurant(
        id="r_1",
        owner_id=owner.id,
        name="Lola's Kitchen",
        city="Makati",
        lat=RESTAURANT_LAT,
        lng=RESTAURANT_LNG,
        bank_account="BDO-0012345678",
        preparation_time=25,
    )
    db.add_all([owner, r])
    db.commit()
    return r


@pytest.fixture
def customer(db):
    u = User(id="u_cust", first_name="Carlo", last_name="Lim", phone="09175550000")
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def make_driver(db):
    def _make(driver_id, km=1.0, rating=5.0, deliveries=100, city="Makati",
              available=True, online=True, located=True, phone=None, gcash=None):
        user = User(id=f"u_{driver_id}", first_name=driver_id.upper(), last_name="Driver",
                    phone=phone or f"0918000{len(driver_id):04d}")
        d = Driver(
            id=driver_id,
            user_id=user.id,
            vehicle_type="motorcycle",
            vehicle_number=f"NAB-{driver_id}",
            is_available=available,
            is_online=online,
            current_lat=north_of(RESTAURANT_LAT, km) if located else None,
            current_lng=RESTAURANT_LNG if located else None,
            current_city=city,
            rating=rating,
            total_deliveries=deliveries,
            total_earnings=Decimal("0.00"),
            gcash_number=gcash,
        )
        db.add_all([user, d])
        db.commit()
        return d

    return _make


@pytest.fixture
def make_order(db, restaurant, customer):
    def _make(order_id="or_1", subtotal="300.00", delivery_fee="50.00", discount="0.00",
              driver_id=None, status=OrderStatus.PENDING, customer_km=2.0):
        o = Order(
            id=order_id,
            order_number=f"ORD-{order_id}",
            restaurant_id=restaurant.id,
            customer_id=customer.id,
            driver_id=driver_id,
            subtotal=Decimal(subtotal),
            delivery_fee=Decimal(delivery_fee),
            discount=Decimal(discount),
            delivery_address="123 Ayala Ave, Makati",
            delivery_lat=north_of(RESTAURANT_LAT, -customer_km),
            delivery_lng=RESTAURANT_LNG,
            status=status,
        )
        db.add(o)
        db.commit()
        return o

    return _make


@pytest.fixture
def routing():
    return FakeRouting()


@pytest.fixture
def geo(routing):
    return GeoCalculator(routing, routing_timeout=1.0, base_fee=50, per_km_fee=10,
                         free_km=3, max_radius_km=15, buffer_min=5)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def channel():
    return InMemoryTrackingChannel()


@pytest.fixture
def orchestrator(session_factory, geo, notifier, channel):
    return AssignmentOrchestrator(
        geo,
        DriverPool(),
        AssignmentScorer(geo, concurrency=4),
        notifier,
        channel,
        session_factory=session_factory,
        max_radius_km=15,
        notify_timeout=1.0,
        reassign_policy="keep",
    )


@pytest.fixture
def payouts():
    return RecordingPayoutGateway()


@pytest.fixture
def scheduler(session_factory, payouts):
    return SettlementScheduler(
        payouts,
        session_factory=session_factory,
        commission_rate=0.18,
        restaurant_schedule="daily",
        driver_schedule="weekly",
        settlement_hour=9,
        timezone_name="Asia/Manila",
        payout_timeout=1.0,
    )
