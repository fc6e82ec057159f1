from __future__ import annotations

from dataclasses import dataclass, asdict
from decimal import Decimal

from .errors import InvalidAmount
from .util import to_money


@dataclass(frozen=True)
class CommissionBreakdown:
    subtotal: Decimal
    delivery_fee: Decimal
    discount: Decimal
    platform_fee: Decimal
    restaurant_amount: Decimal
    driver_amount: Decimal
    total_amount: Decimal

    def as_dict(self) -> dict:
        return asdict(self)


def split(subtotal, delivery_fee, discount, commission_rate) -> CommissionBreakdown:
    """
    Divide an order's money between platform, restaurant and driver.

    Commission is taken on the subtotal only; the delivery fee passes through
    to the driver untouched. The restaurant amount is derived from the
    already-rounded platform fee so that
    restaurant_amount + platform_fee + discount == subtotal holds exactly.
    """
    subtotal = to_money(subtotal)
    delivery_fee = to_money(delivery_fee)
    discount = to_money(discount or 0)
    rate = Decimal(str(commission_rate))

    if subtotal < 0:
        raise InvalidAmount(f"subtotal must not be negative (got {subtotal})")
    if delivery_fee < 0:
        raise InvalidAmount(f"delivery fee must not be negative (got {delivery_fee})")
    if discount < 0:
        raise InvalidAmount(f"discount must not be negative (got {discount})")
    if discount > subtotal:
        raise InvalidAmount(f"discount {discount} exceeds subtotal {subtotal}")
    if not (0 <= rate <= 1):
        raise InvalidAmount(f"commission rate must be within [0, 1] (got {rate})")

    platform_fee = to_money(subtotal * rate)
    return CommissionBreakdown(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        discount=discount,
        platform_fee=platform_fee,
        restaurant_amount=subtotal - platform_fee - discount,
        driver_amount=delivery_fee,
        total_amount=subtotal + delivery_fee - discount,
    )


class CommissionCalculator:
    def __init__(self, commission_rate: float):
        self.commission_rate = commission_rate

    def split(self, subtotal, delivery_fee, discount=0) -> CommissionBreakdown:
        return split(subtotal, delivery_fee, discount, self.commission_rate)
