from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Float, DateTime, ForeignKey, Boolean, Numeric
from sqlalchemy import JSON

from .util import gen_id, utcnow


class Base(DeclarativeBase): pass


Money = Numeric(12, 2)


class OrderStatus:
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    # statuses in which a driver is physically carrying the order
    ACTIVE_DELIVERY = (READY, OUT_FOR_DELIVERY)


class SettlementStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RecipientType:
    RESTAURANT = "restaurant"
    DRIVER = "driver"


class TrackingPhase:
    HEADING_TO_RESTAURANT = "heading_to_restaurant"
    AT_RESTAURANT = "at_restaurant"
    HEADING_TO_CUSTOMER = "heading_to_customer"
    DELIVERED = "delivered"


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("u"))
    first_name: Mapped[str] = mapped_column(String)
    last_name: Mapped[str] = mapped_column(String, default="")
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default="customer")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Restaurant(Base):
    __tablename__ = "restaurants"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("r"))
    owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    name: Mapped[str] = mapped_column(String)
    city: Mapped[str] = mapped_column(String, index=True)
    lat: Mapped[float] = mapped_column(Float)
    lng: Mapped[float] = mapped_column(Float)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String, nullable=True)
    preparation_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    owner = relationship("User")


class Driver(Base):
    __tablename__ = "drivers"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("d"))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    vehicle_type: Mapped[str] = mapped_column(String, default="motorcycle")
    vehicle_number: Mapped[str | None] = mapped_column(String, nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    current_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_city: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    rating: Mapped[float] = mapped_column(Float, default=5.0)
    total_deliveries: Mapped[int] = mapped_column(Integer, default=0)
    total_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    gcash_number: Mapped[str | None] = mapped_column(String, nullable=True)
    user = relationship("User")

    @property
    def name(self) -> str:
        return self.user.full_name if self.user else ""

    @property
    def phone(self) -> str | None:
        return self.user.phone if self.user else None


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("or"))
    order_number: Mapped[str] = mapped_column(String, default=lambda: gen_id("ORD").upper())
    restaurant_id: Mapped[str] = mapped_column(ForeignKey("restaurants.id"))
    customer_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    driver_id: Mapped[str | None] = mapped_column(ForeignKey("drivers.id"), nullable=True, index=True)
    subtotal: Mapped[Decimal] = mapped_column(Money)
    delivery_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    platform_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    delivery_address: Mapped[str] = mapped_column(String, default="")
    delivery_lat: Mapped[float] = mapped_column(Float)
    delivery_lng: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String, default=OrderStatus.PENDING, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    restaurant = relationship("Restaurant")
    customer = relationship("User")
    driver = relationship("Driver")
    tracking = relationship("Tracking", back_populates="order", uselist=False,
                            cascade="all, delete-orphan")


class Tracking(Base):
    __tablename__ = "tracking"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), unique=True)
    driver_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    restaurant_lat: Mapped[float] = mapped_column(Float)
    restaurant_lng: Mapped[float] = mapped_column(Float)
    customer_lat: Mapped[float] = mapped_column(Float)
    customer_lng: Mapped[float] = mapped_column(Float)
    estimated_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minutes
    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_status: Mapped[str] = mapped_column(String, default=TrackingPhase.HEADING_TO_RESTAURANT)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    order = relationship("Order", back_populates="tracking")


class Transaction(Base):
    __tablename__ = "transactions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("tx"))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), unique=True)
    payment_method: Mapped[str] = mapped_column(String)
    amount: Mapped[Decimal] = mapped_column(Money)
    platform_fee: Mapped[Decimal] = mapped_column(Money)
    restaurant_amount: Mapped[Decimal] = mapped_column(Money)
    driver_amount: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String, default="completed")
    gateway_response: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Settlement(Base):
    __tablename__ = "settlements"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("st"))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"))
    recipient_type: Mapped[str] = mapped_column(String)
    recipient_id: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String, default=SettlementStatus.PENDING, index=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    order = relationship("Order")


class DriverEarning(Base):
    __tablename__ = "driver_earnings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    driver_id: Mapped[str] = mapped_column(ForeignKey("drivers.id"), index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"))
    settlement_id: Mapped[str | None] = mapped_column(ForeignKey("settlements.id"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    type: Mapped[str] = mapped_column(String, default="delivery_fee")
    status: Mapped[str] = mapped_column(String, default="pending")
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
