from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import threading
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import (
    AuthorizationError,
    InvalidPaymentInfoError,
    InvalidTransitionError,
    NotFoundError,
    PaymentProcessingError,
)
from storefront.models import NotificationType, Sale, SaleStatus, SaleType
from storefront.observability import increment_counter, record_event
from storefront.services.discount_service import sale_total, to_money
from storefront.services.notification_service import (
    dispatch_inline,
    format_display_date,
    publish_notification,
    resolve_user_ids_by_email,
)
from storefront.services.paypack_client import AccessTokenCache, PaypackClient

SIGNATURE_HEADER = "X-Paypack-Signature"

# Orders the provider may still be asked to charge
PAYABLE_STATUSES = frozenset({SaleStatus.PENDING, SaleStatus.PAYMENT_PENDING})
# A late success callback must not reopen these
CLOSED_STATUSES = frozenset(
    {SaleStatus.CANCELLED, SaleStatus.REFUND_REQUESTED, SaleStatus.REFUNDED}
)

_default_client: Optional[PaypackClient] = None
_default_client_lock = threading.Lock()


def get_default_client() -> PaypackClient:
    """Process-wide provider client, so every request shares one token cache."""
    global _default_client
    with _default_client_lock:
        if _default_client is None:
            _default_client = PaypackClient(
                token_cache=AccessTokenCache(Config.PAYMENT_TOKEN_REFRESH_SKEW_SECONDS),
            )
        return _default_client


def compute_signature(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class PaymentService:
    """
    Payment gateway adapter: charges orders through the provider and
    reconciles the provider's asynchronous callbacks with sale status.
    """

    def __init__(
        self,
        db_session: Session,
        client: Optional[PaypackClient] = None,
        success_statuses: Optional[Iterable[str]] = None,
        webhook_secret: Optional[str] = None,
        dispatch_notifications: Optional[bool] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.client = client or get_default_client()
        self.success_statuses = {
            status.lower() for status in (success_statuses or Config.PAYMENT_SUCCESS_STATUSES)
        }
        self.webhook_secret = Config.PAYMENT_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.dispatch_notifications = dispatch_notifications

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------
    def initiate_payment(self, sale_id: int) -> str:
        """
        Charge the sale's discounted total to the client's mobile-money account.

        Returns the provider's transaction reference and moves the sale to
        PAYMENT_PENDING. Only orders that are still unpaid can be charged.
        Nothing is written when the provider call fails.
        """
        sale = self.db.get(Sale, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found", details={"sale_id": sale_id})
        if sale.type != SaleType.ORDER or sale.status not in PAYABLE_STATUSES:
            increment_counter("payments_rejected_total", labels={"status": sale.status.value})
            self.logger.warning(
                "Refusing to charge sale %s",
                sale.reference,
                extra={"sale_id": sale.saleID, "status": sale.status.value, "type": sale.type.value},
            )
            raise InvalidTransitionError(
                "Payment can only be initiated for an unpaid order.",
                details={"sale_id": sale.saleID, "status": sale.status.value, "type": sale.type.value},
            )

        amount = to_money(sale_total(sale))
        account_number = self._account_number(sale)

        try:
            response = self.client.cashin(account_number, amount)
        except PaymentProcessingError:
            increment_counter("payments_failed_total")
            self.logger.warning(
                "Payment initiation failed",
                extra={"sale_id": sale.saleID, "reference": sale.reference},
            )
            raise

        transaction_ref = str(response["ref"])
        try:
            sale.transaction_ref = transaction_ref
            sale.status = SaleStatus.PAYMENT_PENDING
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        increment_counter("payments_initiated_total")
        record_event(
            "payment_initiated",
            {"sale_id": sale.saleID, "transaction_ref": transaction_ref, "amount": str(amount)},
        )
        self.logger.info(
            "Payment initiated for sale %s",
            sale.reference,
            extra={"sale_id": sale.saleID, "transaction_ref": transaction_ref, "amount": str(amount)},
        )
        return transaction_ref

    @staticmethod
    def _account_number(sale: Sale) -> str:
        client = sale.client
        raw = (client.payment_info if client else None) or "{}"
        try:
            payment_info = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            raise InvalidPaymentInfoError("Invalid payment info format") from None
        if not isinstance(payment_info, dict) or not payment_info.get("accountNumber"):
            raise InvalidPaymentInfoError("Please provide the payment info")
        return str(payment_info["accountNumber"])

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Reject the callback unless it is signed with the shared webhook secret."""
        if not self.webhook_secret:
            return
        expected = compute_signature(self.webhook_secret, raw_body or b"")
        if not signature or not hmac.compare_digest(expected, signature.strip()):
            increment_counter("payment_callbacks_rejected_total")
            self.logger.warning("Payment callback signature mismatch")
            raise AuthorizationError("Invalid webhook signature")

    def handle_callback(self, transaction_ref: str, status: str) -> Dict[str, Any]:
        """
        Apply a provider callback to the sale it refers to.

        Success moves the sale to COMPLETED and notifies the buyer. Any other
        status only notifies the buyer. A repeated success for a sale that is
        already COMPLETED, or any success for a cancelled or refunded sale,
        changes nothing.
        """
        sale = self.db.query(Sale).filter(Sale.transaction_ref == transaction_ref).first()
        if sale is None:
            increment_counter("payment_callbacks_total", labels={"outcome": "unknown_ref"})
            raise NotFoundError(
                "Associated sale not found",
                details={"transaction_ref": transaction_ref},
            )

        succeeded = (status or "").lower() in self.success_statuses
        outcome = "success" if succeeded else "failure"
        if succeeded and sale.status == SaleStatus.COMPLETED:
            increment_counter("payment_callbacks_total", labels={"outcome": "replay"})
            self.logger.info(
                "Ignoring repeated payment callback",
                extra={"sale_id": sale.saleID, "transaction_ref": transaction_ref},
            )
            return {"sale_id": sale.saleID, "status": sale.status.value, "outcome": "replay"}
        if succeeded and sale.status in CLOSED_STATUSES:
            increment_counter("payment_callbacks_total", labels={"outcome": "ignored"})
            self.logger.warning(
                "Ignoring payment callback for closed sale %s",
                sale.reference,
                extra={"sale_id": sale.saleID, "status": sale.status.value, "transaction_ref": transaction_ref},
            )
            return {"sale_id": sale.saleID, "status": sale.status.value, "outcome": "ignored"}

        buyer_ids = resolve_user_ids_by_email(self.db, sale.client_email)
        placed_on = format_display_date(sale.created_at)
        store = Config.STORE_DISPLAY_NAME

        try:
            if succeeded:
                publish_notification(
                    self.db,
                    buyer_ids,
                    "Payment Successful",
                    f"Your payment for the order you placed on {store} on {placed_on} was successful. "
                    "We are now processing your order. Thank you for shopping with us!",
                    html_body=(
                        f"<p>Your payment for the order you placed on <strong>{store}</strong> on "
                        f"<strong>{placed_on}</strong> was successful.</p>"
                        "<p>We are now processing your order. Thank you for shopping with us!</p>"
                    ),
                    type=NotificationType.SUCCESS,
                )
                previous = sale.status
                sale.status = SaleStatus.COMPLETED
            else:
                publish_notification(
                    self.db,
                    buyer_ids,
                    "Payment Failed",
                    f"Your payment for the order you made on {store} on {placed_on} was not successful. "
                    "Please check your payment method and try again or contact our support team for assistance.",
                    html_body=(
                        f"<p>Your payment for the order you made on <strong>{store}</strong> on "
                        f"<strong>{placed_on}</strong> was not successful.</p>"
                        "<p>Please check your payment method and try again or contact our support "
                        "team for assistance.</p>"
                    ),
                    type=NotificationType.ERROR,
                )
                previous = sale.status
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        increment_counter("payment_callbacks_total", labels={"outcome": outcome})
        record_event(
            "payment_callback",
            {
                "sale_id": sale.saleID,
                "transaction_ref": transaction_ref,
                "status": status,
                "from_status": previous.value,
                "to_status": sale.status.value,
            },
        )
        self.logger.info(
            "Payment callback applied to sale %s",
            sale.reference,
            extra={
                "transaction_ref": transaction_ref,
                "provider_status": status,
                "buyer_notified": bool(buyer_ids),
                "to_status": sale.status.value,
            },
        )
        dispatch_inline(self.db, self.dispatch_notifications)
        return {"sale_id": sale.saleID, "status": sale.status.value, "outcome": outcome}

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    def refund_payment(self, sale: Sale) -> None:
        """Refund side effect for an accepted refund. The provider call is not wired up yet."""
        amount = to_money(sale_total(sale))
        increment_counter("payment_refunds_total")
        record_event(
            "payment_refund_requested",
            {"sale_id": sale.saleID, "transaction_ref": sale.transaction_ref, "amount": str(amount)},
        )
        self.logger.info(
            "Refund recorded for sale %s",
            sale.reference,
            extra={"sale_id": sale.saleID, "transaction_ref": sale.transaction_ref, "amount": str(amount)},
        )


__all__ = [
    "PaymentService",
    "PAYABLE_STATUSES",
    "CLOSED_STATUSES",
    "SIGNATURE_HEADER",
    "compute_signature",
    "get_default_client",
]
