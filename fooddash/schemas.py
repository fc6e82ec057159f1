from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field


# ----------------------
# Assignment / tracking
# ----------------------


class DriverOut(BaseModel):
    id: str
    name: str
    phone: str | None
    vehicleType: str
    vehicleNumber: str | None
    rating: float


class AssignmentOut(BaseModel):
    orderId: str
    success: bool
    driver: DriverOut | None = None
    estimatedArrival: int | None = None
    distanceKm: float | None = None
    deliveryFee: Decimal | None = None
    score: float | None = None
    notifications: Dict[str, bool] = {}


class ReassignIn(BaseModel):
    rejectedDriverId: str


class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class LocationOut(BaseModel):
    success: bool
    driverId: str
    orderId: str | None = None
    published: bool = False


class DeliveryEstimateOut(BaseModel):
    restaurantId: str
    distanceKm: float
    estimatedPrepTime: int
    estimatedDeliveryTime: int
    totalEstimatedTime: int
    quotedTime: int
    deliveryFee: Decimal
    fallback: bool


# ----------------------
# Payments / settlements
# ----------------------


class PaymentIn(BaseModel):
    method: str
    gatewayResponse: Dict[str, Any] = {}


class BreakdownOut(BaseModel):
    subtotal: Decimal
    deliveryFee: Decimal
    discount: Decimal
    platformFee: Decimal
    restaurantAmount: Decimal
    driverAmount: Decimal
    totalAmount: Decimal


class TransactionOut(BaseModel):
    orderId: str
    transactionId: str
    created: bool
    breakdown: BreakdownOut
    restaurantSettlementId: str | None = None
    driverSettlementId: str | None = None


class SweepErrorOut(BaseModel):
    settlementId: str
    error: str


class SweepOut(BaseModel):
    processed: int
    failed: int
    skipped: int
    total: int
    errors: List[SweepErrorOut]


class SettlementLineOut(BaseModel):
    id: str
    orderId: str
    amount: Decimal
    status: str
    scheduledFor: datetime
    paymentReference: str | None


class RestaurantSettlementsOut(BaseModel):
    total: int
    pending: int
    completed: int
    failed: int
    totalAmount: Decimal
    pendingAmount: Decimal
    completedAmount: Decimal
    settlements: List[SettlementLineOut]


class EarningLineOut(BaseModel):
    id: int
    orderId: str
    amount: Decimal
    status: str
    paidAt: datetime | None
    createdAt: datetime


class DriverEarningsOut(BaseModel):
    total: int
    pending: int
    paid: int
    totalEarnings: Decimal
    pendingEarnings: Decimal
    paidEarnings: Decimal
    earnings: List[EarningLineOut]


class PlatformAnalyticsOut(BaseModel):
    period: Literal["day", "week", "month"]
    startDate: datetime
    endDate: datetime
    totalOrders: int
    totalRevenue: Decimal
    totalPlatformFees: Decimal
    totalRestaurantPayouts: Decimal
    totalDriverPayouts: Decimal
    averageOrderValue: Decimal
