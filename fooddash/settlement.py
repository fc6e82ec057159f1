"""
Commission settlement: transaction recording, payout scheduling and the
periodic payout sweep.

Money flow for a paid order:
    customer -> platform                 total_amount
    platform -> restaurant (settlement)  subtotal - platform_fee - discount
    platform -> driver (settlement)      delivery_fee

Settlement rows move pending -> processing -> completed | failed. Each
transition out of `pending` is a conditional UPDATE, which is what makes a
repeated sweep a no-op for rows another sweep already took.
"""
from __future__ import annotations

import asyncio
import calendar
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from .commission import CommissionBreakdown, CommissionCalculator
from .config import settings
from .db import db_session
from .errors import FoodDashError, GatewayFailure, OrderNotFound
from .gateways import PayoutGateway, PayoutRecipient, PayoutResult
from .models import (
    Driver,
    DriverEarning,
    Order,
    RecipientType,
    Restaurant,
    Settlement,
    SettlementStatus,
    Transaction,
)
from .util import to_money

logger = logging.getLogger(__name__)

SCHEDULES = ("daily", "weekly", "monthly")


def schedule_for(schedule: str, now: datetime, hour: int = 9, tz: ZoneInfo | None = None) -> datetime:
    """
    Next payout window after `now`:

    - daily:   next calendar day at `hour`:00
    - weekly:  next Monday at `hour`:00 (a Monday schedules one week out)
    - monthly: the 1st of the following month at `hour`:00

    Aware datetimes are evaluated on the wall clock of `tz` (or their own
    zone) and come back aware; naive datetimes come back naive.
    """
    if now.tzinfo is not None and tz is not None:
        now = now.astimezone(tz)
    today = now.date()

    if schedule == "daily":
        day = today + timedelta(days=1)
    elif schedule == "weekly":
        day = today + timedelta(days=(7 - today.weekday()) or 7)
    elif schedule == "monthly":
        day = date(today.year + today.month // 12, today.month % 12 + 1, 1)
    else:
        raise ValueError(f"unknown settlement schedule {schedule!r}; expected one of {SCHEDULES}")

    return datetime.combine(day, dtime(hour, 0), tzinfo=now.tzinfo)


def settlement_period(now: datetime, schedule: str) -> str:
    """Human label for the payout period, sent with each payout."""
    if schedule == "daily":
        return now.strftime("%Y-%m-%d")
    if schedule == "weekly":
        return f"{now:%Y-%m}-W{math.ceil(now.day / 7)}"
    return now.strftime("%Y-%m")


def _to_db(dt: datetime) -> datetime:
    # DateTime columns hold naive UTC; naive input is assumed to be UTC already
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _month_bounds(period) -> tuple[datetime, datetime]:
    if isinstance(period, str):
        period = datetime.strptime(period[:7], "%Y-%m").date()
    start = datetime(period.year, period.month, 1)
    end = datetime(start.year + start.month // 12, start.month % 12 + 1, 1)
    return start, end


def _one_month_back(dt: datetime) -> datetime:
    year, month = (dt.year, dt.month - 1) if dt.month > 1 else (dt.year - 1, 12)
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


@dataclass
class TransactionResult:
    success: bool
    order_id: str
    transaction_id: str | None = None
    breakdown: CommissionBreakdown | None = None
    restaurant_settlement_id: str | None = None
    driver_settlement_id: str | None = None
    created: bool = False
    error: FoodDashError | None = None


@dataclass
class SettlementFailure:
    settlement_id: str
    error: str


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    total: int = 0
    skipped: int = 0
    errors: List[SettlementFailure] = field(default_factory=list)


@dataclass(frozen=True)
class SettlementLine:
    id: str
    order_id: str
    amount: Decimal
    status: str
    scheduled_for: datetime
    payment_reference: str | None


@dataclass
class SettlementSummary:
    total: int
    pending: int
    completed: int
    failed: int
    total_amount: Decimal
    pending_amount: Decimal
    completed_amount: Decimal
    settlements: List[SettlementLine]


@dataclass(frozen=True)
class EarningLine:
    id: int
    order_id: str
    amount: Decimal
    status: str
    paid_at: datetime | None
    created_at: datetime


@dataclass
class EarningsSummary:
    total: int
    pending: int
    paid: int
    total_earnings: Decimal
    pending_earnings: Decimal
    paid_earnings: Decimal
    earnings: List[EarningLine]


@dataclass
class PlatformAnalytics:
    period: str
    start_date: datetime
    end_date: datetime
    total_orders: int
    total_revenue: Decimal
    total_platform_fees: Decimal
    total_restaurant_payouts: Decimal
    total_driver_payouts: Decimal
    average_order_value: Decimal


def _sum(values) -> Decimal:
    return to_money(sum(values, Decimal("0")))


@dataclass
class _PayoutRequest:
    reference_id: str
    recipient: PayoutRecipient
    amount: Decimal
    description: str
    metadata: Dict[str, Any]
    recipient_type: str
    recipient_id: str
    order_id: str


class SettlementScheduler:
    def __init__(
        self,
        gateway: PayoutGateway,
        *,
        session_factory=None,
        commission_rate: float | None = None,
        restaurant_schedule: str | None = None,
        driver_schedule: str | None = None,
        settlement_hour: int | None = None,
        timezone_name: str | None = None,
        payout_timeout: float | None = None,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.calculator = CommissionCalculator(
            commission_rate if commission_rate is not None else settings.PLATFORM_COMMISSION_RATE
        )
        self.schedules = {
            RecipientType.RESTAURANT: restaurant_schedule or settings.RESTAURANT_SETTLEMENT_SCHEDULE,
            RecipientType.DRIVER: driver_schedule or settings.DRIVER_SETTLEMENT_SCHEDULE,
        }
        self.hour = settlement_hour if settlement_hour is not None else settings.SETTLEMENT_HOUR
        self.tz = ZoneInfo(timezone_name or settings.SETTLEMENT_TIMEZONE)
        self.payout_timeout = payout_timeout if payout_timeout is not None else settings.PAYOUT_TIMEOUT_S

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def schedule_for(self, schedule: str, now: datetime | None = None) -> datetime:
        return schedule_for(schedule, now or self.now(), hour=self.hour, tz=self.tz)

    # ----------------------
    # Creating obligations
    # ----------------------

    def create_settlement(
        self,
        order_id: str,
        recipient_type: str,
        recipient_id: str,
        amount,
        *,
        db: Session | None = None,
        now: datetime | None = None,
    ) -> Settlement:
        """
        Persist a pending settlement due at the recipient type's next payout
        window. Joins `db`'s transaction when given.
        """
        if recipient_type not in self.schedules:
            raise ValueError(f"unknown recipient type {recipient_type!r}")
        now = now or self.now()
        due = self.schedule_for(self.schedules[recipient_type], now)
        settlement = Settlement(
            order_id=order_id,
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            amount=to_money(amount),
            status=SettlementStatus.PENDING,
            scheduled_for=_to_db(due),
            created_at=_to_db(now),
        )
        if db is not None:
            db.add(settlement)
            db.flush()
            return settlement

        with db_session(self.session_factory) as own:
            own.add(settlement)
            own.flush()
            own.expunge(settlement)
        logger.info(f"Settlement {settlement.id} for {recipient_type} {recipient_id} due {due.isoformat()}")
        return settlement

    def record_transaction(
        self,
        order_id: str,
        payment_method: str,
        gateway_response: Dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> TransactionResult:
        """
        Book a confirmed payment: commission split, transaction row and the
        settlements it creates. Recording the same order twice returns the
        first transaction without creating anything new.
        """
        now = now or self.now()
        with db_session(self.session_factory) as db:
            order = db.get(Order, order_id)
            if order is None:
                return TransactionResult(success=False, order_id=order_id, error=OrderNotFound())

            existing = db.execute(
                select(Transaction).where(Transaction.order_id == order_id)
            ).scalars().first()
            if existing is not None:
                return TransactionResult(
                    success=True,
                    order_id=order_id,
                    transaction_id=existing.id,
                    breakdown=CommissionBreakdown(
                        subtotal=to_money(order.subtotal),
                        delivery_fee=to_money(order.delivery_fee),
                        discount=to_money(order.discount),
                        platform_fee=to_money(existing.platform_fee),
                        restaurant_amount=to_money(existing.restaurant_amount),
                        driver_amount=to_money(existing.driver_amount),
                        total_amount=to_money(existing.amount),
                    ),
                    created=False,
                )

            breakdown = self.calculator.split(order.subtotal, order.delivery_fee, order.discount)
            tx = Transaction(
                order_id=order_id,
                payment_method=payment_method,
                amount=breakdown.total_amount,
                platform_fee=breakdown.platform_fee,
                restaurant_amount=breakdown.restaurant_amount,
                driver_amount=breakdown.driver_amount,
                status="completed",
                gateway_response=gateway_response or {},
                created_at=_to_db(now),
            )
            db.add(tx)
            order.platform_fee = breakdown.platform_fee
            order.total_amount = breakdown.total_amount

            restaurant_settlement = self.create_settlement(
                order_id, RecipientType.RESTAURANT, order.restaurant_id,
                breakdown.restaurant_amount, db=db, now=now,
            )

            driver_settlement = None
            if order.driver_id:
                driver_settlement = self.create_settlement(
                    order_id, RecipientType.DRIVER, order.driver_id,
                    breakdown.driver_amount, db=db, now=now,
                )
                db.add(DriverEarning(
                    driver_id=order.driver_id,
                    order_id=order_id,
                    settlement_id=driver_settlement.id,
                    amount=breakdown.driver_amount,
                    type="delivery_fee",
                    status="pending",
                    created_at=_to_db(now),
                ))
                db.execute(
                    update(Driver)
                    .where(Driver.id == order.driver_id)
                    .values(total_earnings=Driver.total_earnings + breakdown.driver_amount)
                )
            db.flush()

            result = TransactionResult(
                success=True,
                order_id=order_id,
                transaction_id=tx.id,
                breakdown=breakdown,
                restaurant_settlement_id=restaurant_settlement.id,
                driver_settlement_id=driver_settlement.id if driver_settlement else None,
                created=True,
            )
        logger.info(
            f"Transaction {result.transaction_id} for order {order_id}: total {breakdown.total_amount}, "
            f"platform {breakdown.platform_fee}, restaurant {breakdown.restaurant_amount}, "
            f"driver {breakdown.driver_amount}"
        )
        return result

    # ----------------------
    # Payout sweep
    # ----------------------

    async def process_due(self, now: datetime | None = None) -> SweepResult:
        """
        Pay out every pending settlement due at `now`. Items are independent:
        a failed payout marks its own row `failed` and the sweep carries on.
        """
        now = now or self.now()
        cutoff = _to_db(now)
        with db_session(self.session_factory) as db:
            due_ids = (
                db.execute(
                    select(Settlement.id)
                    .where(
                        Settlement.status == SettlementStatus.PENDING,
                        Settlement.scheduled_for <= cutoff,
                    )
                    .order_by(Settlement.scheduled_for, Settlement.id)
                )
                .scalars()
                .all()
            )

        result = SweepResult(total=len(due_ids))
        for settlement_id in due_ids:
            outcome = await self._process_one(settlement_id, now)
            if outcome is None:
                result.skipped += 1
            elif outcome.success:
                result.processed += 1
            else:
                result.failed += 1
                result.errors.append(SettlementFailure(settlement_id, outcome.error or "Payout failed"))

        logger.info(
            f"Settlement sweep at {now.isoformat()}: {result.processed} processed, "
            f"{result.failed} failed, {result.skipped} skipped of {result.total}"
        )
        return result

    def requeue_failed(self, now: datetime | None = None) -> int:
        """Put failed settlements back in the queue for the next sweep."""
        cutoff = _to_db(now or self.now())
        with db_session(self.session_factory) as db:
            count = db.execute(
                update(Settlement)
                .where(Settlement.status == SettlementStatus.FAILED)
                .values(status=SettlementStatus.PENDING, scheduled_for=cutoff)
            ).rowcount
        logger.info(f"{count} failed settlements requeued")
        return count

    async def _process_one(self, settlement_id: str, now: datetime) -> Optional[PayoutResult]:
        with db_session(self.session_factory) as db:
            claimed = db.execute(
                update(Settlement)
                .where(Settlement.id == settlement_id, Settlement.status == SettlementStatus.PENDING)
                .values(status=SettlementStatus.PROCESSING)
            ).rowcount
            if not claimed:
                return None

            settlement = db.get(Settlement, settlement_id)
            request, problem = self._payout_request(db, settlement, now)
            if request is None:
                logger.error(f"Settlement {settlement_id} cannot be paid: {problem}")
                settlement.status = SettlementStatus.FAILED
                settlement.notes = problem
                return PayoutResult(success=False, error=problem)

        try:
            outcome = await asyncio.wait_for(
                self.gateway.payout(
                    request.reference_id,
                    request.recipient,
                    request.amount,
                    request.description,
                    request.metadata,
                ),
                timeout=self.payout_timeout,
            )
        except asyncio.TimeoutError:
            outcome = PayoutResult(success=False, error=f"Payout timed out after {self.payout_timeout}s")
        except (GatewayFailure, httpx.HTTPError) as exc:
            outcome = PayoutResult(success=False, error=str(exc) or exc.__class__.__name__)
        except Exception as exc:
            # a claimed row must always leave `processing`
            logger.exception(f"Unexpected payout error for settlement {settlement_id}")
            outcome = PayoutResult(success=False, error=f"Unexpected payout error: {exc!r}")

        with db_session(self.session_factory) as db:
            settlement = db.get(Settlement, settlement_id)
            if outcome.success:
                settlement.status = SettlementStatus.COMPLETED
                settlement.processed_at = _to_db(now)
                settlement.payment_reference = outcome.payout_id
                if request.recipient_type == RecipientType.DRIVER:
                    db.execute(
                        update(DriverEarning)
                        .where(
                            DriverEarning.order_id == request.order_id,
                            DriverEarning.driver_id == request.recipient_id,
                        )
                        .values(status="paid", paid_at=_to_db(now))
                    )
            else:
                logger.error(f"Payout for settlement {settlement_id} failed: {outcome.error}")
                settlement.status = SettlementStatus.FAILED
                settlement.notes = outcome.error
        return outcome

    def _payout_request(self, db: Session, settlement: Settlement, now: datetime):
        order = db.get(Order, settlement.order_id)
        order_number = order.order_number if order else settlement.order_id
        local_now = now.astimezone(self.tz) if now.tzinfo else now
        stamp = int(local_now.timestamp()) if now.tzinfo else local_now.strftime("%Y%m%d%H%M%S")
        period = settlement_period(local_now, self.schedules[settlement.recipient_type])
        metadata = {"settlement_id": settlement.id, "period": period}

        if settlement.recipient_type == RecipientType.RESTAURANT:
            restaurant = db.get(Restaurant, settlement.recipient_id)
            if restaurant is None:
                return None, f"Restaurant {settlement.recipient_id} not found"
            recipient = PayoutRecipient(
                account_type="bank_account",
                account_number=restaurant.bank_account or "****",
                account_name=restaurant.name,
            )
            reference = f"REST_{settlement.id}_{stamp}"
            description = f"Restaurant settlement for order {order_number}"
        elif settlement.recipient_type == RecipientType.DRIVER:
            driver = db.execute(
                select(Driver).options(selectinload(Driver.user)).where(Driver.id == settlement.recipient_id)
            ).scalars().first()
            if driver is None:
                return None, f"Driver {settlement.recipient_id} not found"
            account = driver.gcash_number or driver.phone
            if not account:
                return None, f"Driver {driver.id} has no payout account"
            recipient = PayoutRecipient(
                account_type="gcash_account",
                account_number=account,
                account_name=driver.name,
            )
            reference = f"DRV_{settlement.id}_{stamp}"
            description = f"Driver earnings for order {order_number}"
        else:
            return None, f"Unknown recipient type {settlement.recipient_type!r}"

        return _PayoutRequest(
            reference_id=reference,
            recipient=recipient,
            amount=to_money(settlement.amount),
            description=description,
            metadata=metadata,
            recipient_type=settlement.recipient_type,
            recipient_id=settlement.recipient_id,
            order_id=settlement.order_id,
        ), None

    # ----------------------
    # Reporting
    # ----------------------

    def restaurant_summary(self, restaurant_id: str, period=None) -> SettlementSummary:
        """Settlements owed to a restaurant, optionally for one month ("YYYY-MM")."""
        stmt = select(Settlement).where(
            Settlement.recipient_type == RecipientType.RESTAURANT,
            Settlement.recipient_id == restaurant_id,
        )
        if period:
            start, end = _month_bounds(period)
            stmt = stmt.where(Settlement.scheduled_for >= start, Settlement.scheduled_for < end)

        with db_session(self.session_factory) as db:
            rows = db.execute(stmt.order_by(Settlement.created_at.desc())).scalars().all()
            lines = [
                SettlementLine(
                    id=s.id,
                    order_id=s.order_id,
                    amount=to_money(s.amount),
                    status=s.status,
                    scheduled_for=s.scheduled_for,
                    payment_reference=s.payment_reference,
                )
                for s in rows
            ]

        def amount(status=None):
            return _sum(line.amount for line in lines if status is None or line.status == status)

        return SettlementSummary(
            total=len(lines),
            pending=sum(1 for line in lines if line.status == SettlementStatus.PENDING),
            completed=sum(1 for line in lines if line.status == SettlementStatus.COMPLETED),
            failed=sum(1 for line in lines if line.status == SettlementStatus.FAILED),
            total_amount=amount(),
            pending_amount=amount(SettlementStatus.PENDING),
            completed_amount=amount(SettlementStatus.COMPLETED),
            settlements=lines,
        )

    def driver_earnings(self, driver_id: str, period=None) -> EarningsSummary:
        stmt = select(DriverEarning).where(DriverEarning.driver_id == driver_id)
        if period:
            start, end = _month_bounds(period)
            stmt = stmt.where(DriverEarning.created_at >= start, DriverEarning.created_at < end)

        with db_session(self.session_factory) as db:
            rows = db.execute(stmt.order_by(DriverEarning.created_at.desc())).scalars().all()
            lines = [
                EarningLine(
                    id=e.id,
                    order_id=e.order_id,
                    amount=to_money(e.amount),
                    status=e.status,
                    paid_at=e.paid_at,
                    created_at=e.created_at,
                )
                for e in rows
            ]

        return EarningsSummary(
            total=len(lines),
            pending=sum(1 for e in lines if e.status == "pending"),
            paid=sum(1 for e in lines if e.status == "paid"),
            total_earnings=_sum(e.amount for e in lines),
            pending_earnings=_sum(e.amount for e in lines if e.status == "pending"),
            paid_earnings=_sum(e.amount for e in lines if e.status == "paid"),
            earnings=lines,
        )

    def platform_analytics(self, period: str = "month", now: datetime | None = None) -> PlatformAnalytics:
        end = _to_db(now or self.now())
        if period == "day":
            start = end.replace(hour=0, minute=0, second=0, microsecond=0)
        elif period == "week":
            start = end - timedelta(days=7)
        else:
            period = "month"
            start = _one_month_back(end)

        with db_session(self.session_factory) as db:
            txs = (
                db.execute(
                    select(Transaction).where(
                        Transaction.created_at >= start,
                        Transaction.created_at <= end,
                        Transaction.status == "completed",
                    )
                )
                .scalars()
                .all()
            )
            revenue = _sum(t.amount for t in txs)
            analytics = PlatformAnalytics(
                period=period,
                start_date=start,
                end_date=end,
                total_orders=len(txs),
                total_revenue=revenue,
                total_platform_fees=_sum(t.platform_fee for t in txs),
                total_restaurant_payouts=_sum(t.restaurant_amount for t in txs),
                total_driver_payouts=_sum(t.driver_amount for t in txs),
                average_order_value=to_money(revenue / len(txs)) if txs else Decimal("0.00"),
            )
        return analytics
