from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from storefront.auth import require_auth
from storefront.database import get_db
from storefront.schemas import CartAdd, parse_body
from storefront.services.cart_service import CartService

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


def _get_cart_service() -> CartService:
    return CartService(get_db())


@cart_bp.route("", methods=["GET"])
@require_auth()
def view_cart():
    return jsonify(_get_cart_service().get_cart(g.current_user.userID))


@cart_bp.route("", methods=["POST"])
@require_auth()
def add_to_cart():
    body = parse_body(CartAdd, request.get_json(silent=True))
    service = _get_cart_service()
    service.add_item(g.current_user.userID, body.inventory_id, body.quantity)
    return jsonify(service.get_cart(g.current_user.userID)), 201


@cart_bp.route("", methods=["DELETE"])
@require_auth()
def empty_cart():
    removed = _get_cart_service().empty_cart(g.current_user.userID)
    return jsonify({"removed": removed})
