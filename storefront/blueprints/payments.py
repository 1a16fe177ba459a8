from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from storefront.database import get_db
from storefront.schemas import CallbackPayload, parse_body
from storefront.services.payment_service import SIGNATURE_HEADER, PaymentService

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def get_payment_service() -> PaymentService:
    # Tests and operators can swap the provider client through app.extensions
    return PaymentService(
        get_db(),
        client=current_app.extensions.get("paypack_client"),
        webhook_secret=current_app.config.get("PAYMENT_WEBHOOK_SECRET"),
        dispatch_notifications=current_app.config.get("NOTIFICATIONS_DISPATCH_INLINE"),
    )


@payments_bp.route("/initiate/<int:sale_id>", methods=["POST"])
def initiate_payment(sale_id: int):
    reference = get_payment_service().initiate_payment(sale_id)
    return jsonify({"paymentToken": reference})


@payments_bp.route("/callback", methods=["POST"])
def payment_callback():
    service = get_payment_service()
    service.verify_signature(request.get_data(), request.headers.get(SIGNATURE_HEADER))
    payload = parse_body(CallbackPayload, request.get_json(silent=True))
    result = service.handle_callback(payload.data.ref, payload.data.status)
    return jsonify(result)
