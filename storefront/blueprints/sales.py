from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Blueprint, current_app, g, jsonify, request

from storefront.auth import require_auth
from storefront.blueprints.payments import get_payment_service
from storefront.database import get_db
from storefront.models import Privilege, Sale, SaleClient
from storefront.schemas import (
    CancelRequest,
    CompleteRefundRequest,
    CreateOrderRequest,
    CreateSaleRequest,
    RefundRequest,
    SalesQuery,
    parse_body,
)
from storefront.services.discount_service import sale_total, to_money
from storefront.services.order_lifecycle_service import OrderLifecycleService
from storefront.services.sales_service import SalesService

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _get_sales_service() -> SalesService:
    return SalesService(get_db(), payment_service=get_payment_service())


def _get_lifecycle_service() -> OrderLifecycleService:
    return OrderLifecycleService(
        get_db(),
        payment_service=get_payment_service(),
        dispatch_notifications=current_app.config.get("NOTIFICATIONS_DISPATCH_INLINE"),
    )


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_client(client: Optional[SaleClient]) -> Optional[Dict[str, Any]]:
    if client is None:
        return None
    # payment_info stays server side
    return {
        "name": client.name,
        "email": client.email,
        "phone": client.phone,
        "address": client.address,
        "city": client.city,
        "state": client.state,
        "country": client.country,
    }


def _serialize_sale(sale: Sale) -> Dict[str, Any]:
    return {
        "id": sale.saleID,
        "reference": sale.reference,
        "status": sale.status.value if sale.status else None,
        "type": sale.type.value if sale.type else None,
        "payment_method": sale.payment_method,
        "transaction_ref": sale.transaction_ref,
        "cancel_reason": sale.cancel_reason,
        "refund_reason": sale.refund_reason,
        "refund_response": sale.refund_response,
        "created_at": _iso(sale.created_at),
        "updated_at": _iso(sale.updated_at),
        "client": _serialize_client(sale.client),
        "items": [
            {
                "id": item.saleItemID,
                "inventory_id": item.inventoryID,
                "variant_reference": item.inventory.variant_reference if item.inventory else None,
                "quantity": item.quantity,
                "amount": to_money(item.amount),
            }
            for item in sale.items
        ],
        "total": to_money(sale_total(sale)),
    }


def _serialize_page(page: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "items": [_serialize_sale(sale) for sale in page["items"]],
        "total": page["total"],
        "page": page["page"],
        "limit": page["limit"],
    }


# ---------------------------------------------
# Creation
# ---------------------------------------------

@sales_bp.route("", methods=["POST"])
@require_auth(Privilege.CREATE_SALES)
def create_sale():
    body = parse_body(CreateSaleRequest, request.get_json(silent=True))
    sale, receipt = _get_sales_service().create_sale(
        [item.model_dump() for item in body.items],
        body.payment_method,
        body.client.model_dump() if body.client else None,
    )
    return jsonify({"sale": _serialize_sale(sale), "receipt": receipt}), 201


@sales_bp.route("/order", methods=["POST"])
@require_auth(optional=True)
def create_order():
    body = parse_body(CreateOrderRequest, request.get_json(silent=True))
    sale = _get_sales_service().create_order(
        [item.model_dump() for item in body.items],
        body.client.model_dump(),
    )
    return jsonify(_serialize_sale(sale)), 201


# ---------------------------------------------
# Queries
# ---------------------------------------------

@sales_bp.route("", methods=["GET"])
@require_auth(Privilege.VIEW_SALES)
def list_sales():
    query = parse_body(SalesQuery, request.args.to_dict())
    page = _get_sales_service().list_sales(**query.model_dump())
    return jsonify(_serialize_page(page))


@sales_bp.route("/mine", methods=["GET"])
@require_auth()
def list_my_sales():
    query = parse_body(SalesQuery, request.args.to_dict())
    page = _get_sales_service().list_sales_for_email(g.current_user.email, **query.model_dump())
    return jsonify(_serialize_page(page))


@sales_bp.route("/<sale_id>", methods=["GET"])
@require_auth(Privilege.VIEW_SALES)
def get_sale(sale_id: str):
    sale = _get_sales_service().get_sale(sale_id)
    return jsonify(_serialize_sale(sale))


# ---------------------------------------------
# Lifecycle
# ---------------------------------------------

@sales_bp.route("/<int:sale_id>", methods=["DELETE"])
@require_auth(Privilege.UPDATE_ORDERS)
def remove_sale(sale_id: int):
    sale = _get_lifecycle_service().remove_sale(sale_id)
    return jsonify(_serialize_sale(sale))


@sales_bp.route("/<int:sale_id>/cancel", methods=["POST"])
@require_auth(Privilege.UPDATE_ORDERS)
def cancel_order(sale_id: int):
    body = parse_body(CancelRequest, request.get_json(silent=True))
    sale = _get_lifecycle_service().cancel_order(sale_id, body.reason, actor=g.current_user)
    return jsonify(_serialize_sale(sale))


@sales_bp.route("/<int:sale_id>/delivering", methods=["POST"])
@require_auth(Privilege.UPDATE_ORDERS)
def set_to_delivering(sale_id: int):
    sale = _get_lifecycle_service().set_to_delivering(sale_id)
    return jsonify(_serialize_sale(sale))


@sales_bp.route("/<int:sale_id>/completed", methods=["POST"])
@require_auth(Privilege.UPDATE_ORDERS)
def set_to_completed(sale_id: int):
    sale = _get_lifecycle_service().set_to_completed(sale_id)
    return jsonify(_serialize_sale(sale))


@sales_bp.route("/<int:sale_id>/refund-request", methods=["POST"])
@require_auth(Privilege.UPDATE_ORDERS)
def request_refund(sale_id: int):
    body = parse_body(RefundRequest, request.get_json(silent=True))
    sale = _get_lifecycle_service().request_refund(sale_id, body.message)
    return jsonify(_serialize_sale(sale))


@sales_bp.route("/<int:sale_id>/complete-refund", methods=["POST"])
@require_auth(Privilege.UPDATE_ORDERS)
def complete_refund(sale_id: int):
    body = parse_body(CompleteRefundRequest, request.get_json(silent=True))
    sale = _get_lifecycle_service().complete_refund(sale_id, body.message, body.action)
    return jsonify(_serialize_sale(sale))
