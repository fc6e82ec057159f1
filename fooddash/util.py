import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

__all__ = ["gen_id", "to_money", "utcnow"]

CENT = Decimal("0.01")


def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


def to_money(value) -> Decimal:
    """Coerce int/float/str/Decimal to a Decimal rounded half-up to cents."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    # naive UTC, matching what the DateTime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)
