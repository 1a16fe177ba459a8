from datetime import datetime, timedelta, timezone
from decimal import Decimal

from storefront.models import Discount, Inventory, Sale, SaleItem
from storefront.services.discount_service import (
    discount_applies,
    effective_unit_price,
    highest_applicable,
    line_total,
    sale_total,
    to_money,
)

NOW = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)


def _discount(percentage, start, end, start_hour=None, end_hour=None):
    return Discount(
        percentage=Decimal(str(percentage)),
        start_date=start,
        end_date=end,
        start_hour=start_hour,
        end_hour=end_hour,
    )


def _inventory(price="1000.00", discounts=()):
    inventory = Inventory(variant_reference="DRESS-RED-M", quantity=10, price=Decimal(price))
    inventory.discounts = list(discounts)
    return inventory


def test_highest_active_discount_wins_and_expired_ones_are_ignored():
    inventory = _inventory(
        discounts=[
            _discount(20, NOW - timedelta(days=1), NOW + timedelta(days=1)),
            _discount(35, NOW - timedelta(days=2), NOW + timedelta(days=2)),
            _discount(10, NOW - timedelta(days=10), NOW - timedelta(days=5)),
        ]
    )

    assert highest_applicable(inventory, NOW) == Decimal("35")
    assert to_money(effective_unit_price(inventory, NOW)) == Decimal("650.00")


def test_no_applicable_discount_means_full_price():
    inventory = _inventory(discounts=[_discount(50, NOW + timedelta(days=1), NOW + timedelta(days=3))])

    assert highest_applicable(inventory, NOW) == Decimal("0")
    assert to_money(line_total(inventory, 2, NOW)) == Decimal("2000.00")


def test_hour_window_restricts_discount_inside_date_window():
    happy_hour = _discount(
        30,
        NOW - timedelta(days=1),
        NOW + timedelta(days=1),
        start_hour=9,
        end_hour=11,
    )

    assert discount_applies(happy_hour, NOW)
    assert not discount_applies(happy_hour, NOW.replace(hour=14))
    assert discount_applies(happy_hour, NOW.replace(hour=11, minute=59))


def test_window_bounds_are_inclusive():
    discount = _discount(15, NOW, NOW + timedelta(hours=1))

    assert discount_applies(discount, NOW)
    assert discount_applies(discount, NOW + timedelta(hours=1))
    assert not discount_applies(discount, NOW + timedelta(hours=1, seconds=1))


def test_naive_datetimes_are_read_as_utc():
    discount = _discount(25, NOW.replace(tzinfo=None), (NOW + timedelta(days=1)).replace(tzinfo=None))

    assert discount_applies(discount, NOW)


def test_sale_total_prices_at_creation_time():
    inventory = _inventory(discounts=[_discount(25, NOW - timedelta(hours=1), NOW + timedelta(hours=1))])
    sale = Sale(reference="SALE-00001", created_at=NOW)
    sale.items.append(SaleItem(inventory=inventory, quantity=3, amount=Decimal("2250.00")))

    assert to_money(sale_total(sale)) == Decimal("2250.00")
    # The discount has ended by now, the sale still costs what it cost when placed
    assert to_money(sale_total(sale, at=NOW + timedelta(days=1))) == Decimal("3000.00")
    assert to_money(sale_total(sale)) == Decimal("2250.00")
