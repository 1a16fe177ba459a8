from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from storefront.errors import ValidationError
from storefront.models import CartItem, User
from storefront.services.discount_service import (
    ZERO,
    effective_unit_price,
    highest_applicable,
    to_money,
)
from storefront.services.inventory_service import InventoryService


class CartService:
    """Per-user shopping cart. Orders placed for a user's e-mail empty that user's cart."""

    def __init__(self, db_session: Session, inventory_service: Optional[InventoryService] = None) -> None:
        self.db = db_session
        self.inventory = inventory_service or InventoryService(db_session)
        self.logger = logging.getLogger(__name__)

    def add_item(self, user_id: int, inventory_id: int, quantity: int) -> CartItem:
        if quantity is None or int(quantity) <= 0:
            raise ValidationError("Quantity must be a positive integer")

        existing = (
            self.db.query(CartItem)
            .filter_by(userID=user_id, inventoryID=inventory_id)
            .first()
        )
        wanted = int(quantity) + (existing.quantity if existing else 0)
        self.inventory.check_availability(inventory_id, wanted)

        if existing:
            existing.quantity = wanted
            item = existing
        else:
            item = CartItem(userID=user_id, inventoryID=inventory_id, quantity=wanted)
            self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        self.logger.info(
            "Cart updated for user %s",
            user_id,
            extra={"inventory_id": inventory_id, "quantity": wanted},
        )
        return item

    def get_cart(self, user_id: int, at: Optional[datetime] = None) -> Dict[str, Any]:
        moment = at or datetime.now(timezone.utc)
        items = (
            self.db.query(CartItem)
            .filter_by(userID=user_id)
            .order_by(CartItem.cartItemID)
            .all()
        )
        lines = []
        total = ZERO
        for item in items:
            unit_price = effective_unit_price(item.inventory, moment)
            line_total = unit_price * item.quantity
            total += line_total
            lines.append(
                {
                    "cart_item_id": item.cartItemID,
                    "inventory_id": item.inventoryID,
                    "variant_reference": item.inventory.variant_reference,
                    "quantity": item.quantity,
                    "unit_price": to_money(Decimal(item.inventory.price)),
                    "discount_percentage": highest_applicable(item.inventory, moment),
                    "line_total": to_money(line_total),
                }
            )
        return {"items": lines, "total": to_money(total)}

    def empty_cart(self, user_id: int, commit: bool = True) -> int:
        removed = self.db.query(CartItem).filter_by(userID=user_id).delete(synchronize_session=False)
        if commit:
            self.db.commit()
        return removed

    def empty_cart_for_email(self, email: Optional[str], commit: bool = True) -> int:
        """Empty the cart of the user registered under `email`; 0 when nobody matches."""
        if not email:
            return 0
        user = self.db.query(User).filter(User.email == email).first()
        if user is None:
            return 0
        return self.empty_cart(user.userID, commit=commit)


__all__ = ["CartService"]
