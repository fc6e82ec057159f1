from decimal import Decimal

from .db import engine, db_session
from .models import Base, User, Restaurant, Driver


def create_schema(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def seed_restaurants(factory=None):
    with db_session(factory) as db:
        if db.query(Restaurant).count() > 0:
            return

        owner = User(id="u_owner", first_name="Maria", last_name="Santos", phone="09171234567", role="restaurant")
        db.add(owner)
        db.add_all([
            Restaurant(id="r_1", owner_id=owner.id, name="Lola's Kitchen", city="Makati",
                       lat=14.5547, lng=121.0244, phone="09171234567",
                       bank_account="BDO-0012345678", preparation_time=25),
            Restaurant(id="r_2", owner_id=owner.id, name="Inasal Express", city="Quezon City",
                       lat=14.6760, lng=121.0437, phone="09171234567",
                       bank_account="BPI-0098765432", preparation_time=20),
        ])


def seed_drivers(factory=None):
    """
    A handful of online drivers scattered around Makati for local testing.
    """
    with db_session(factory) as db:
        if db.query(Driver).count() > 0:
            return

        roster = [
            ("d_1", "Juan", "Dela Cruz", "09181110001", 14.5560, 121.0230, 4.9, 320),
            ("d_2", "Ana", "Reyes", "09181110002", 14.5600, 121.0300, 4.6, 85),
            ("d_3", "Paolo", "Garcia", "09181110003", 14.5400, 121.0500, 4.8, 150),
            ("d_4", "Liza", "Mendoza", "09181110004", 14.5800, 121.0600, 4.2, 12),
        ]
        for driver_id, first, last, phone, lat, lng, rating, deliveries in roster:
            user = User(id=f"u_{driver_id}", first_name=first, last_name=last, phone=phone, role="driver")
            db.add(user)
            db.add(Driver(
                id=driver_id,
                user_id=user.id,
                vehicle_type="motorcycle",
                vehicle_number=f"NAB-{driver_id[-1]}23",
                is_available=True,
                is_online=True,
                current_lat=lat,
                current_lng=lng,
                current_city="Makati",
                rating=rating,
                total_deliveries=deliveries,
                total_earnings=Decimal("0.00"),
                gcash_number=phone,
            ))


def bootstrap():
    create_schema()
    seed_restaurants()
    seed_drivers()
