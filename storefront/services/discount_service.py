"""
Discount resolution for inventory lines.

A discount applies at time T when T falls inside its date window and, if
both hour bounds are set, when the hour of T (in the store timezone) falls
inside the hour window. Only the highest applicable percentage is used.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from storefront.config import Config
from storefront.models import Discount, Inventory, Sale

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENTS = Decimal("0.01")

try:
    _STORE_TZ = ZoneInfo(getattr(Config, "DEFAULT_TIMEZONE", "UTC"))
except ZoneInfoNotFoundError:
    _STORE_TZ = timezone.utc


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_store_time(value: datetime) -> datetime:
    return as_utc(value).astimezone(_STORE_TZ)


def to_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def discount_applies(discount: Discount, at: datetime) -> bool:
    moment = as_utc(at)
    if not (as_utc(discount.start_date) <= moment <= as_utc(discount.end_date)):
        return False
    if discount.start_hour is None or discount.end_hour is None:
        return True
    hour = to_store_time(moment).hour
    return discount.start_hour <= hour <= discount.end_hour


def applicable_discounts(discounts: Iterable[Discount], at: datetime) -> List[Discount]:
    return [discount for discount in discounts if discount_applies(discount, at)]


def highest_applicable(inventory: Inventory, at: datetime) -> Decimal:
    """Highest applicable percentage for the line at `at`, 0 when none applies."""
    return max(
        (Decimal(d.percentage) for d in applicable_discounts(inventory.discounts, at)),
        default=ZERO,
    )


def effective_unit_price(inventory: Inventory, at: datetime) -> Decimal:
    percentage = highest_applicable(inventory, at)
    return Decimal(inventory.price) * (1 - percentage / HUNDRED)


def line_total(inventory: Inventory, quantity: int, at: datetime) -> Decimal:
    return effective_unit_price(inventory, at) * quantity


def sale_total(sale: Sale, at: Optional[datetime] = None) -> Decimal:
    """
    Discounted total of a sale.

    Payment initiation and sale display both price a sale at its creation
    time, so the amount charged and the amount shown always agree.
    """
    moment = at or sale.created_at
    return sum(
        (line_total(item.inventory, item.quantity, moment) for item in sale.items),
        ZERO,
    )


__all__ = [
    "as_utc",
    "to_store_time",
    "to_money",
    "discount_applies",
    "applicable_discounts",
    "highest_applicable",
    "effective_unit_price",
    "line_total",
    "sale_total",
]
