from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .assignment import AssignmentOrchestrator, AssignmentResult
from .bootstrap import bootstrap
from .channel import InMemoryTrackingChannel
from .config import settings
from .driver_pool import DriverPool
from .errors import FoodDashError
from .gateways import GCashPayoutGateway, LoggingNotifier, SemaphoreNotifier, StubPayoutGateway
from .geo import GeoCalculator
from .routing import LatLng, OsrmRoutingService
from .schemas import (
    AssignmentOut,
    BreakdownOut,
    DeliveryEstimateOut,
    DriverEarningsOut,
    DriverOut,
    EarningLineOut,
    LocationIn,
    LocationOut,
    PaymentIn,
    PlatformAnalyticsOut,
    ReassignIn,
    RestaurantSettlementsOut,
    SettlementLineOut,
    SweepErrorOut,
    SweepOut,
    TransactionOut,
)
from .scoring import AssignmentScorer
from .settlement import SettlementScheduler

logger = logging.getLogger(__name__)


# ----------------------
# Wiring
# ----------------------


@dataclass
class Services:
    orchestrator: AssignmentOrchestrator
    scheduler: SettlementScheduler
    channel: InMemoryTrackingChannel


def build_services(session_factory=None) -> Services:
    """Construct the core with production collaborators chosen from settings."""
    channel = InMemoryTrackingChannel()
    geo = GeoCalculator(OsrmRoutingService())
    notifier = SemaphoreNotifier() if settings.SEMAPHORE_API_KEY else LoggingNotifier()
    gateway = GCashPayoutGateway() if settings.GCASH_APP_ID else StubPayoutGateway()
    orchestrator = AssignmentOrchestrator(
        geo,
        DriverPool(),
        AssignmentScorer(geo),
        notifier,
        channel,
        session_factory=session_factory,
    )
    scheduler = SettlementScheduler(gateway, session_factory=session_factory)
    return Services(orchestrator=orchestrator, scheduler=scheduler, channel=channel)


_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bootstrap()
    yield


app = FastAPI(title="FoodDash Dispatch API", lifespan=lifespan)


# ----------------------
# CORS
# ----------------------

origins = ["*"]
if settings.APP_DOMAIN:
    origins = [f"https://{settings.APP_DOMAIN}", f"http://{settings.APP_DOMAIN}"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Utility helpers
# ----------------------

STATUS_BY_CODE = {
    "ORDER_NOT_FOUND": 404,
    "DRIVER_NOT_FOUND": 404,
    "RESTAURANT_NOT_FOUND": 404,
    "NO_DRIVERS_AVAILABLE": 409,
    "ASSIGNMENT_CONFLICT": 409,
    "OUT_OF_SERVICE_AREA": 422,
    "INVALID_AMOUNT": 422,
}


def raise_for_error(error: FoodDashError):
    raise HTTPException(
        status_code=STATUS_BY_CODE.get(error.code, 500),
        detail={"error": error.code, "message": error.detail},
    )


def assignment_out(result: AssignmentResult) -> AssignmentOut:
    if not result.success:
        raise_for_error(result.error)
    d = result.driver
    return AssignmentOut(
        orderId=result.order_id,
        success=True,
        driver=DriverOut(
            id=d.id,
            name=d.name,
            phone=d.phone,
            vehicleType=d.vehicle_type,
            vehicleNumber=d.vehicle_number,
            rating=d.rating,
        ),
        estimatedArrival=result.estimated_arrival_min,
        distanceKm=result.distance_km,
        deliveryFee=result.delivery_fee,
        score=result.score,
        notifications=result.notifications,
    )


# ----------------------
# Assignment endpoints
# ----------------------


@app.post("/orders/{order_id}/assign", response_model=AssignmentOut)
async def assign_driver(order_id: str, svc: Services = Depends(get_services)):
    return assignment_out(await svc.orchestrator.assign(order_id))


@app.post("/orders/{order_id}/reassign", response_model=AssignmentOut)
async def reassign_driver(order_id: str, body: ReassignIn, svc: Services = Depends(get_services)):
    return assignment_out(await svc.orchestrator.reassign(order_id, body.rejectedDriverId))


@app.post("/drivers/{driver_id}/location", response_model=LocationOut)
async def update_location(driver_id: str, body: LocationIn, svc: Services = Depends(get_services)):
    result = await svc.orchestrator.update_driver_location(driver_id, body.lat, body.lng)
    if not result.success:
        raise_for_error(result.error)
    return LocationOut(
        success=True,
        driverId=driver_id,
        orderId=result.order_id,
        published=result.published,
    )


@app.get("/delivery/estimate", response_model=DeliveryEstimateOut)
async def delivery_estimate(
    restaurantId: str = Query(...),
    lat: float = Query(...),
    lng: float = Query(...),
    svc: Services = Depends(get_services),
):
    est = await svc.orchestrator.delivery_estimate(restaurantId, LatLng(lat, lng))
    if not est.success:
        raise_for_error(est.error)
    return DeliveryEstimateOut(
        restaurantId=restaurantId,
        distanceKm=est.distance_km,
        estimatedPrepTime=est.prep_time_min,
        estimatedDeliveryTime=est.delivery_time_min,
        totalEstimatedTime=est.total_time_min,
        quotedTime=est.quoted_time_min,
        deliveryFee=est.delivery_fee,
        fallback=est.fallback,
    )


@app.websocket("/ws/tracking/{order_id}")
async def tracking_stream(websocket: WebSocket, order_id: str, svc: Services = Depends(get_services)):
    await websocket.accept()
    queue = svc.channel.subscribe(order_id)

    async def forward():
        while True:
            await websocket.send_json(await queue.get())

    sender = asyncio.create_task(forward())
    try:
        # inbound frames are ignored; reading is how a disconnect is noticed
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"tracking subscriber for {order_id} disconnected")
    finally:
        sender.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await sender
        svc.channel.unsubscribe(order_id, queue)


# ----------------------
# Payments & settlements
# ----------------------


@app.post("/orders/{order_id}/payments", response_model=TransactionOut)
def record_payment(order_id: str, body: PaymentIn, svc: Services = Depends(get_services)):
    try:
        result = svc.scheduler.record_transaction(order_id, body.method, body.gatewayResponse)
    except FoodDashError as exc:
        raise_for_error(exc)
    if not result.success:
        raise_for_error(result.error)
    b = result.breakdown
    return TransactionOut(
        orderId=order_id,
        transactionId=result.transaction_id,
        created=result.created,
        breakdown=BreakdownOut(
            subtotal=b.subtotal,
            deliveryFee=b.delivery_fee,
            discount=b.discount,
            platformFee=b.platform_fee,
            restaurantAmount=b.restaurant_amount,
            driverAmount=b.driver_amount,
            totalAmount=b.total_amount,
        ),
        restaurantSettlementId=result.restaurant_settlement_id,
        driverSettlementId=result.driver_settlement_id,
    )


@app.post("/settlements/process", response_model=SweepOut)
async def process_settlements(now: datetime | None = None, svc: Services = Depends(get_services)):
    """
    Payout sweep; meant to be hit by the scheduler (cron, k8s CronJob, ...).
    """
    result = await svc.scheduler.process_due(now)
    return SweepOut(
        processed=result.processed,
        failed=result.failed,
        skipped=result.skipped,
        total=result.total,
        errors=[SweepErrorOut(settlementId=e.settlement_id, error=e.error) for e in result.errors],
    )


@app.get("/restaurants/{restaurant_id}/settlements", response_model=RestaurantSettlementsOut)
def restaurant_settlements(
    restaurant_id: str,
    period: str | None = Query(None, pattern=r"^\d{4}-\d{2}$"),
    svc: Services = Depends(get_services),
):
    s = svc.scheduler.restaurant_summary(restaurant_id, period)
    return RestaurantSettlementsOut(
        total=s.total,
        pending=s.pending,
        completed=s.completed,
        failed=s.failed,
        totalAmount=s.total_amount,
        pendingAmount=s.pending_amount,
        completedAmount=s.completed_amount,
        settlements=[
            SettlementLineOut(
                id=line.id,
                orderId=line.order_id,
                amount=line.amount,
                status=line.status,
                scheduledFor=line.scheduled_for,
                paymentReference=line.payment_reference,
            )
            for line in s.settlements
        ],
    )


@app.get("/drivers/{driver_id}/earnings", response_model=DriverEarningsOut)
def driver_earnings(
    driver_id: str,
    period: str | None = Query(None, pattern=r"^\d{4}-\d{2}$"),
    svc: Services = Depends(get_services),
):
    e = svc.scheduler.driver_earnings(driver_id, period)
    return DriverEarningsOut(
        total=e.total,
        pending=e.pending,
        paid=e.paid,
        totalEarnings=e.total_earnings,
        pendingEarnings=e.pending_earnings,
        paidEarnings=e.paid_earnings,
        earnings=[
            EarningLineOut(
                id=line.id,
                orderId=line.order_id,
                amount=line.amount,
                status=line.status,
                paidAt=line.paid_at,
                createdAt=line.created_at,
            )
            for line in e.earnings
        ],
    )


@app.get("/analytics/platform", response_model=PlatformAnalyticsOut)
def platform_analytics(
    period: Literal["day", "week", "month"] = "month",
    svc: Services = Depends(get_services),
):
    a = svc.scheduler.platform_analytics(period)
    return PlatformAnalyticsOut(
        period=a.period,
        startDate=a.start_date,
        endDate=a.end_date,
        totalOrders=a.total_orders,
        totalRevenue=a.total_revenue,
        totalPlatformFees=a.total_platform_fees,
        totalRestaurantPayouts=a.total_restaurant_payouts,
        totalDriverPayouts=a.total_driver_payouts,
        averageOrderValue=a.average_order_value,
    )
