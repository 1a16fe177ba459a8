from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.models import Discount, Inventory, SaleItem
from storefront.observability import increment_counter
from storefront.services.discount_service import as_utc


class InventoryService:
    """
    Inventory ledger: declared stock per variant, netted against every
    recorded sale line.

    Remaining stock is never stored. It is recomputed from the sale lines
    each time it is asked for, so callers that need the answer to hold until
    they write (sale creation) must pass ``lock=True`` and stay inside the
    same transaction.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------
    def total_sold(self, inventory_id: int) -> int:
        sold = (
            self.db.query(func.coalesce(func.sum(SaleItem.quantity), 0))
            .filter(SaleItem.inventoryID == inventory_id)
            .scalar()
        )
        return int(sold or 0)

    def remaining_stock(self, inventory: Inventory) -> int:
        return inventory.quantity - self.total_sold(inventory.inventoryID)

    def get_inventory(self, inventory_id: int, lock: bool = False) -> Inventory:
        query = self.db.query(Inventory).filter_by(inventoryID=inventory_id)
        if lock:
            query = query.with_for_update()
        inventory = query.first()
        if not inventory:
            raise NotFoundError(
                f"Inventory with ID {inventory_id} not found",
                details={"inventory_id": inventory_id},
            )
        return inventory

    def check_availability(self, inventory_id: int, requested_qty: int, lock: bool = False) -> Inventory:
        """
        Return the inventory line when `requested_qty` units are still available.

        Raises NotFoundError for an unknown line and InsufficientStockError
        (carrying the available quantity) when the line cannot cover the request.
        """
        if requested_qty is None or int(requested_qty) <= 0:
            raise ValidationError(
                "Quantity must be a positive integer",
                details={"inventory_id": inventory_id, "quantity": requested_qty},
            )

        inventory = self.get_inventory(inventory_id, lock=lock)
        available = self.remaining_stock(inventory)
        if available < requested_qty:
            increment_counter("stock_rejections_total")
            self.logger.info(
                "Insufficient stock for inventory %s",
                inventory_id,
                extra={"available": available, "requested": requested_qty},
            )
            raise InsufficientStockError(inventory_id, available, requested_qty)
        return inventory

    def check_items(self, items: Iterable[Tuple[int, int]], lock: bool = False) -> Dict[int, Inventory]:
        """
        Validate every (inventory_id, quantity) pair.

        Quantities for the same line are added together first, so one request
        cannot oversell a line by splitting it over several entries. The first
        failing line aborts the whole check.
        """
        requested: "OrderedDict[int, int]" = OrderedDict()
        for inventory_id, quantity in items:
            requested[inventory_id] = requested.get(inventory_id, 0) + quantity

        # Lock rows in id order so concurrent requests cannot deadlock on each other
        checked: Dict[int, Inventory] = {}
        for inventory_id in sorted(requested):
            checked[inventory_id] = self.check_availability(inventory_id, requested[inventory_id], lock=lock)
        return checked

    # ------------------------------------------------------------------
    # Inventory lines
    # ------------------------------------------------------------------
    def create_inventory(self, variant_reference: str, quantity: int, price) -> Inventory:
        if not variant_reference or not str(variant_reference).strip():
            raise ValidationError("variant_reference is required")
        quantity = self._non_negative_int(quantity, "quantity")
        price = self._non_negative_decimal(price, "price")

        inventory = Inventory(
            variant_reference=str(variant_reference).strip(),
            quantity=quantity,
            price=price,
        )
        self.db.add(inventory)
        self.db.commit()
        self.db.refresh(inventory)
        increment_counter("inventory_lines_created_total")
        self.logger.info(
            "Inventory line %s created",
            inventory.inventoryID,
            extra={"variant_reference": inventory.variant_reference, "quantity": quantity},
        )
        return inventory

    def update_inventory(
        self,
        inventory_id: int,
        quantity: Optional[int] = None,
        price=None,
    ) -> Inventory:
        inventory = self.get_inventory(inventory_id)
        if quantity is not None:
            inventory.quantity = self._non_negative_int(quantity, "quantity")
        if price is not None:
            inventory.price = self._non_negative_decimal(price, "price")
        self.db.commit()
        self.db.refresh(inventory)
        self.logger.info("Inventory line %s updated", inventory_id)
        return inventory

    # ------------------------------------------------------------------
    # Discounts
    # ------------------------------------------------------------------
    def add_discount(
        self,
        inventory_id: int,
        percentage,
        start_date: datetime,
        end_date: datetime,
        start_hour: Optional[int] = None,
        end_hour: Optional[int] = None,
    ) -> Discount:
        inventory = self.get_inventory(inventory_id)
        percentage = self._non_negative_decimal(percentage, "percentage")
        if percentage > 100:
            raise ValidationError("Discount must be between 0 and 100 percent")
        if start_date is None or end_date is None:
            raise ValidationError("start_date and end_date are required")
        if as_utc(start_date) > as_utc(end_date):
            raise ValidationError("start_date must not be after end_date")
        if (start_hour is None) != (end_hour is None):
            raise ValidationError("start_hour and end_hour must be provided together")
        if start_hour is not None:
            start_hour, end_hour = int(start_hour), int(end_hour)
            for name, hour in (("start_hour", start_hour), ("end_hour", end_hour)):
                if not 0 <= int(hour) <= 23:
                    raise ValidationError(f"{name} must be between 0 and 23")
            if start_hour > end_hour:
                raise ValidationError("start_hour must not be after end_hour")

        discount = Discount(
            inventoryID=inventory.inventoryID,
            percentage=percentage,
            start_date=as_utc(start_date),
            end_date=as_utc(end_date),
            start_hour=start_hour,
            end_hour=end_hour,
        )
        self.db.add(discount)
        self.db.commit()
        self.db.refresh(discount)
        self.logger.info(
            "Discount %s added to inventory %s",
            discount.discountID,
            inventory_id,
            extra={"percentage": str(percentage)},
        )
        return discount

    def list_discounts(self, inventory_id: int) -> List[Discount]:
        return list(self.get_inventory(inventory_id).discounts)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _non_negative_int(value, name: str) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be an integer") from None
        if number < 0:
            raise ValidationError(f"{name} must not be negative")
        return number

    @staticmethod
    def _non_negative_decimal(value, name: str) -> Decimal:
        try:
            number = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"{name} must be a number") from None
        if number < 0:
            raise ValidationError(f"{name} must not be negative")
        return number
