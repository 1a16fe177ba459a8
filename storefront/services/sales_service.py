from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import desc, or_
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import NotFoundError, StorefrontError, ValidationError
from storefront.models import (
    Inventory,
    Sale,
    SaleClient,
    SaleItem,
    SaleStatus,
    SaleType,
)
from storefront.observability import increment_counter, record_event, timed
from storefront.services.cart_service import CartService
from storefront.services.discount_service import (
    as_utc,
    effective_unit_price,
    highest_applicable,
    line_total,
    sale_total,
    to_money,
)
from storefront.services.inventory_service import InventoryService
from storefront.services.payment_service import PaymentService
from storefront.services.sequence_service import next_sale_reference

CLIENT_FIELDS = ("name", "email", "phone", "address", "city", "state", "country")


class SalesService:
    """
    Creates sales (point of sale) and orders (online) as one all-or-nothing
    unit: stock checks, the reference counter, the sale rows and the cart
    clean-up share a single transaction.
    """

    def __init__(
        self,
        db_session: Session,
        inventory_service: Optional[InventoryService] = None,
        payment_service: Optional[PaymentService] = None,
        cart_service: Optional[CartService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.inventory = inventory_service or InventoryService(db_session)
        self.cart = cart_service or CartService(db_session, self.inventory)
        self._payment_service = payment_service

    @property
    def payments(self) -> PaymentService:
        if self._payment_service is None:
            self._payment_service = PaymentService(self.db)
        return self._payment_service

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_sale(
        self,
        items: Iterable[Any],
        payment_method: str,
        client: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Sale, Dict[str, Any]]:
        """Record an in-person sale. Returns the sale and its receipt."""
        if not payment_method or not str(payment_method).strip():
            raise ValidationError("payment_method is required")

        with timed("sale_creation_latency_ms", labels={"type": SaleType.SALE.value}):
            sale = self._persist(
                items,
                client,
                status=SaleStatus.COMPLETED,
                sale_type=SaleType.SALE,
                payment_method=str(payment_method).strip(),
            )

        increment_counter("sales_created_total")
        record_event("sale_created", {"sale_id": sale.saleID, "reference": sale.reference})
        return sale, self.build_receipt(sale)

    def create_order(
        self,
        items: Iterable[Any],
        client: Mapping[str, Any],
        initiate_payment: bool = True,
    ) -> Sale:
        """
        Place an online order and ask the provider to charge it.

        The order is committed before the provider is called. When that call
        fails the order stays PENDING and PaymentProcessingError propagates;
        the buyer can pay later through payment initiation.
        """
        if not client or not client.get("email"):
            raise ValidationError("Client details with an email are required for an order")

        with timed("sale_creation_latency_ms", labels={"type": SaleType.ORDER.value}):
            sale = self._persist(
                items,
                client,
                status=SaleStatus.PENDING,
                sale_type=SaleType.ORDER,
                payment_method=Config.ORDER_PAYMENT_METHOD,
                empty_cart_for=client.get("email"),
            )

        increment_counter("orders_created_total")
        record_event("order_created", {"sale_id": sale.saleID, "reference": sale.reference})

        if initiate_payment:
            try:
                self.payments.initiate_payment(sale.saleID)
            except StorefrontError as exc:
                # The order exists; tell the caller which one to pay later
                exc.details.setdefault("sale_id", sale.saleID)
                exc.details.setdefault("reference", sale.reference)
                raise
            self.db.refresh(sale)
        return sale

    def _persist(
        self,
        items: Iterable[Any],
        client: Optional[Mapping[str, Any]],
        status: SaleStatus,
        sale_type: SaleType,
        payment_method: str,
        empty_cart_for: Optional[str] = None,
    ) -> Sale:
        lines = self._normalize_items(items)
        try:
            inventories = self.inventory.check_items(lines, lock=True)
            created_at = datetime.now(timezone.utc)
            sale = Sale(
                reference=next_sale_reference(self.db),
                status=status,
                type=sale_type,
                payment_method=payment_method,
                created_at=created_at,
            )
            for inventory_id, quantity in lines:
                inventory = inventories[inventory_id]
                sale.items.append(
                    SaleItem(
                        inventory=inventory,
                        quantity=quantity,
                        amount=to_money(line_total(inventory, quantity, created_at)),
                    )
                )
            if client:
                sale.clients.append(self._build_client(client))
            self.db.add(sale)

            if empty_cart_for:
                self.cart.empty_cart_for_email(empty_cart_for, commit=False)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(sale)
        self.logger.info(
            "Sale %s created",
            sale.reference,
            extra={
                "sale_id": sale.saleID,
                "type": sale_type.value,
                "status": status.value,
                "lines": len(lines),
            },
        )
        return sale

    @staticmethod
    def _normalize_items(items: Iterable[Any]) -> List[Tuple[int, int]]:
        lines = []
        for item in items or []:
            if isinstance(item, Mapping):
                inventory_id = item.get("inventory_id")
                quantity = item.get("quantity")
            else:
                inventory_id = getattr(item, "inventory_id", None)
                quantity = getattr(item, "quantity", None)
            try:
                inventory_id = int(inventory_id)
                quantity = int(quantity)
            except (TypeError, ValueError):
                raise ValidationError(
                    "Each item needs an integer inventory_id and quantity",
                    details={"item": str(item)},
                ) from None
            if quantity <= 0:
                raise ValidationError(
                    "Quantity must be a positive integer",
                    details={"inventory_id": inventory_id, "quantity": quantity},
                )
            lines.append((inventory_id, quantity))
        if not lines:
            raise ValidationError("At least one item is required")
        return lines

    @staticmethod
    def _build_client(client: Mapping[str, Any]) -> SaleClient:
        if not client.get("name"):
            raise ValidationError("Client name is required")
        payment_info = client.get("payment_info")
        if payment_info is not None and not isinstance(payment_info, str):
            payment_info = json.dumps(payment_info)
        return SaleClient(
            payment_info=payment_info,
            **{field: client.get(field) for field in CLIENT_FIELDS},
        )

    # ------------------------------------------------------------------
    # Receipt
    # ------------------------------------------------------------------
    def build_receipt(self, sale: Sale) -> Dict[str, Any]:
        moment = sale.created_at
        lines = []
        for item in sale.items:
            inventory: Inventory = item.inventory
            lines.append(
                {
                    "inventory_id": inventory.inventoryID,
                    "variant_reference": inventory.variant_reference,
                    "quantity": item.quantity,
                    "unit_price": to_money(Decimal(inventory.price)),
                    "discount_percentage": highest_applicable(inventory, moment),
                    "discounted_unit_price": to_money(effective_unit_price(inventory, moment)),
                    "line_total": to_money(line_total(inventory, item.quantity, moment)),
                }
            )
        client = sale.client
        return {
            "store": Config.STORE_DISPLAY_NAME,
            "title": "Sale Receipt",
            "reference": sale.reference,
            "date": moment.isoformat() if moment else None,
            "payment_method": sale.payment_method,
            "client": (
                {"name": client.name, "email": client.email, "phone": client.phone}
                if client
                else None
            ),
            "items": lines,
            "total": to_money(sale_total(sale)),
            "footer": "Thank you for shopping with us!",
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_sale(self, sale_id_or_reference) -> Sale:
        sale = None
        if isinstance(sale_id_or_reference, int) or str(sale_id_or_reference).isdigit():
            sale = self.db.get(Sale, int(sale_id_or_reference))
        if sale is None:
            sale = self.db.query(Sale).filter(Sale.reference == str(sale_id_or_reference)).first()
        if sale is None:
            raise NotFoundError(
                f"Sale with ID {sale_id_or_reference} not found",
                details={"sale_id": sale_id_or_reference},
            )
        return sale

    def list_sales(
        self,
        status: Optional[str] = None,
        type: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        client_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        page, limit = self._page_bounds(page, limit)
        query = self.db.query(Sale)

        if status:
            query = query.filter(Sale._status == self._parse_enum(SaleStatus, status, "status"))
        if type:
            query = query.filter(Sale.type == self._parse_enum(SaleType, type, "type"))
        if start_date:
            query = query.filter(Sale.created_at >= as_utc(start_date))
        if end_date:
            query = query.filter(Sale.created_at <= as_utc(end_date))
        if client_email:
            query = query.filter(Sale.clients.any(SaleClient.email == client_email))
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    Sale.reference.ilike(pattern),
                    Sale.clients.any(SaleClient.name.ilike(pattern)),
                    Sale.items.any(SaleItem.inventory.has(Inventory.variant_reference.ilike(pattern))),
                )
            )

        total = query.count()
        sales = (
            query.order_by(desc(Sale.created_at), desc(Sale.saleID))
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {"items": sales, "total": total, "page": page, "limit": limit}

    def list_sales_for_email(self, email: str, **filters) -> Dict[str, Any]:
        """Orders and sales whose client snapshot carries `email` ("my orders")."""
        if not email:
            raise ValidationError("An email is required to list your orders")
        filters.pop("client_email", None)
        return self.list_sales(client_email=email, **filters)

    @staticmethod
    def _page_bounds(page, limit) -> Tuple[int, int]:
        try:
            page = int(page or 1)
            limit = int(limit or Config.DEFAULT_PAGE_SIZE)
        except (TypeError, ValueError):
            raise ValidationError("page and limit must be integers") from None
        if page < 1:
            page = 1
        if limit < 1:
            limit = Config.DEFAULT_PAGE_SIZE
        return page, min(limit, Config.MAX_PAGE_SIZE)

    @staticmethod
    def _parse_enum(enum_cls, value, name: str):
        try:
            return enum_cls(str(value).upper())
        except ValueError:
            raise ValidationError(
                f"Unknown {name} '{value}'",
                details={"allowed": [member.value for member in enum_cls]},
            ) from None


__all__ = ["SalesService"]
