from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from storefront.auth import require_auth
from storefront.database import get_db
from storefront.models import Discount, Inventory, Privilege
from storefront.schemas import DiscountCreate, InventoryCreate, InventoryUpdate, parse_body
from storefront.services.discount_service import to_money
from storefront.services.inventory_service import InventoryService

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _get_inventory_service() -> InventoryService:
    return InventoryService(get_db())


def _serialize_discount(discount: Discount) -> Dict[str, Any]:
    return {
        "id": discount.discountID,
        "inventory_id": discount.inventoryID,
        "percentage": discount.percentage,
        "start_date": discount.start_date.isoformat() if discount.start_date else None,
        "end_date": discount.end_date.isoformat() if discount.end_date else None,
        "start_hour": discount.start_hour,
        "end_hour": discount.end_hour,
    }


def _serialize_inventory(inventory: Inventory, service: InventoryService) -> Dict[str, Any]:
    return {
        "id": inventory.inventoryID,
        "variant_reference": inventory.variant_reference,
        "quantity": inventory.quantity,
        "remaining_stock": service.remaining_stock(inventory),
        "price": to_money(inventory.price),
        "discounts": [_serialize_discount(d) for d in inventory.discounts],
    }


@inventory_bp.route("", methods=["POST"])
@require_auth(Privilege.MANAGE_INVENTORY)
def create_inventory():
    body = parse_body(InventoryCreate, request.get_json(silent=True))
    service = _get_inventory_service()
    inventory = service.create_inventory(body.variant_reference, body.quantity, body.price)
    return jsonify(_serialize_inventory(inventory, service)), 201


@inventory_bp.route("/<int:inventory_id>", methods=["GET"])
def get_inventory(inventory_id: int):
    service = _get_inventory_service()
    return jsonify(_serialize_inventory(service.get_inventory(inventory_id), service))


@inventory_bp.route("/<int:inventory_id>", methods=["PATCH"])
@require_auth(Privilege.MANAGE_INVENTORY)
def update_inventory(inventory_id: int):
    body = parse_body(InventoryUpdate, request.get_json(silent=True))
    service = _get_inventory_service()
    inventory = service.update_inventory(inventory_id, quantity=body.quantity, price=body.price)
    return jsonify(_serialize_inventory(inventory, service))


@inventory_bp.route("/<int:inventory_id>/discounts", methods=["POST"])
@require_auth(Privilege.MANAGE_INVENTORY)
def add_discount(inventory_id: int):
    body = parse_body(DiscountCreate, request.get_json(silent=True))
    discount = _get_inventory_service().add_discount(
        inventory_id,
        body.percentage,
        body.start_date,
        body.end_date,
        start_hour=body.start_hour,
        end_hour=body.end_hour,
    )
    return jsonify(_serialize_discount(discount)), 201


@inventory_bp.route("/<int:inventory_id>/discounts", methods=["GET"])
def list_discounts(inventory_id: int):
    discounts = _get_inventory_service().list_discounts(inventory_id)
    return jsonify({"items": [_serialize_discount(d) for d in discounts]})
