"""
Order lifecycle: status transitions after a sale or order exists.

    PENDING -> PAYMENT_PENDING -> COMPLETED
    any open status -> DELIVERING | COMPLETED | CANCELLED
    open status -> REFUND_REQUESTED -> REFUNDED (accept) | previous status (reject)

Buyer notifications are queued in the outbox inside the transition's own
transaction and delivered after it commits.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from storefront.errors import InvalidTransitionError, NotFoundError, ValidationError
from storefront.models import NotificationType, Sale, SaleStatus, User
from storefront.observability import increment_counter, record_event
from storefront.services.notification_service import (
    clean_text,
    dispatch_inline,
    publish_notification,
    resolve_user_ids_by_email,
)
from storefront.services.payment_service import CLOSED_STATUSES, PaymentService

REFUND_ACTIONS = ("ACCEPT", "REJECT")


class OrderLifecycleService:
    def __init__(
        self,
        db_session: Session,
        payment_service: Optional[PaymentService] = None,
        dispatch_notifications: Optional[bool] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self._payment_service = payment_service
        self.dispatch_notifications = dispatch_notifications

    @property
    def payments(self) -> PaymentService:
        if self._payment_service is None:
            self._payment_service = PaymentService(self.db)
        return self._payment_service

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def cancel_order(self, sale_id: int, reason: str, actor: Any = None) -> Sale:
        """
        Cancel a sale. The buyer is warned unless they cancelled it themselves.

        `actor` is the acting User (or an e-mail string); None counts as staff.
        """
        reason = self._require_text(reason, "Cancel reason is required.")
        sale = self._get_sale(sale_id)
        actor_email = actor.email if isinstance(actor, User) else actor

        def notify() -> None:
            if actor_email and actor_email == sale.client_email:
                return
            name = clean_text(sale.client.name if sale.client else "Customer")
            self._notify_buyer(
                sale,
                "Your Order Has Been Cancelled",
                f"Your order {sale.reference} has been cancelled. Reason: {reason}",
                f"<p>Dear {name},</p>"
                f"<p>We regret to inform you that your order with Order ID: <strong>{sale.reference}</strong> "
                "has been cancelled by the admin.</p>"
                f"<p><strong>Reason:</strong> {clean_text(reason)}</p>"
                "<p>We sincerely apologize for any inconvenience this may have caused. If you have any "
                "questions, please reach out to our support team.</p>"
                "<p>Thank you for your understanding.</p>",
                NotificationType.WARNING,
            )

        return self._transition(sale, SaleStatus.CANCELLED, notify, cancel_reason=reason)

    def remove_sale(self, sale_id: int) -> Sale:
        """Soft delete: the sale stays on record as CANCELLED."""
        sale = self._get_sale(sale_id)
        return self._transition(sale, SaleStatus.CANCELLED)

    def set_to_delivering(self, sale_id: int) -> Sale:
        sale = self._get_sale(sale_id)
        self._guard_open(sale, "Cannot update a cancelled or refunded order.")

        def notify() -> None:
            name = clean_text(sale.client.name if sale.client else "Customer")
            self._notify_buyer(
                sale,
                "Your Order is Now Being Delivered",
                f"Your order {sale.reference} is now being delivered.",
                f"<p>Dear {name},</p>"
                f"<p>Your order with Order ID: <strong>{sale.reference}</strong> is now being delivered.</p>"
                "<p>We are working hard to deliver your items. Please keep an eye out for the delivery.</p>"
                "<p>Thank you for choosing us!</p>",
                NotificationType.INFO,
            )

        return self._transition(sale, SaleStatus.DELIVERING, notify)

    def set_to_completed(self, sale_id: int) -> Sale:
        sale = self._get_sale(sale_id)
        self._guard_open(sale, "Cannot update a cancelled or refunded order.")

        def notify() -> None:
            name = clean_text(sale.client.name if sale.client else "Customer")
            self._notify_buyer(
                sale,
                "Your Order Has Been Completed",
                f"Your order {sale.reference} has been completed successfully.",
                f"<p>Dear {name},</p>"
                "<p>We are pleased to inform you that your order with Order ID: "
                f"<strong>{sale.reference}</strong> has been completed successfully.</p>"
                "<p>Thank you for shopping with us. We hope to serve you again soon!</p>",
                NotificationType.SUCCESS,
            )

        return self._transition(sale, SaleStatus.COMPLETED, notify)

    def request_refund(self, sale_id: int, message: str) -> Sale:
        message = self._require_text(message, "Refund request message is required.")
        sale = self._get_sale(sale_id)
        self._guard_open(sale, "Cannot request a refund for a cancelled or refunded order.")
        return self._transition(
            sale,
            SaleStatus.REFUND_REQUESTED,
            refund_reason=message,
            status_before_refund=sale.status,
        )

    def complete_refund(self, sale_id: int, message: str, action: str) -> Sale:
        """Accept or reject a pending refund request."""
        message = self._require_text(
            message,
            "Please provide a message explaining the reason for your refund request.",
        )
        action = str(action or "").upper()
        if action not in REFUND_ACTIONS:
            raise ValidationError(
                'Invalid action. Please specify either "ACCEPT" or "REJECT".',
                details={"allowed": list(REFUND_ACTIONS)},
            )

        sale = self._get_sale(sale_id)
        if sale.status == SaleStatus.REFUNDED:
            raise InvalidTransitionError(
                "This order has already been refunded. You cannot request another refund.",
                details={"sale_id": sale.saleID, "status": sale.status.value},
            )
        if sale.status != SaleStatus.REFUND_REQUESTED:
            raise InvalidTransitionError(
                "There is no pending refund request for this order.",
                details={"sale_id": sale.saleID, "status": sale.status.value},
            )

        reference = sale.reference
        if action == "ACCEPT":
            def notify_accepted() -> None:
                self._notify_buyer(
                    sale,
                    "Your Refund Request Has Been Accepted",
                    f"Your refund request for order {reference} has been accepted.",
                    "<p>Dear Customer,</p>"
                    f"<p>Your refund request for Order ID: <strong>{reference}</strong> has been accepted.</p>"
                    f"<p><strong>Refund Reason:</strong> {clean_text(message)}</p>"
                    "<p>Your refund is being processed. If you have any questions, feel free to contact us.</p>"
                    "<p>Thank you for your patience.</p>",
                    NotificationType.INFO,
                )

            updated = self._transition(sale, SaleStatus.REFUNDED, notify_accepted, refund_response=message)
            self.payments.refund_payment(updated)
            return updated

        def notify_rejected() -> None:
            self._notify_buyer(
                sale,
                "Your Refund Request Has Been Rejected",
                f"Your refund request for order {reference} has been rejected.",
                "<p>Dear Customer,</p>"
                f"<p>Unfortunately, your refund request for Order ID: <strong>{reference}</strong> "
                "has been rejected.</p>"
                f"<p><strong>Reason:</strong> {clean_text(message)}</p>"
                "<p>If you have any questions or need further assistance, please contact our support team.</p>"
                "<p>Thank you for understanding.</p>",
                NotificationType.INFO,
            )

        restored = sale.status_before_refund or SaleStatus.COMPLETED
        return self._transition(
            sale,
            SaleStatus(restored),
            notify_rejected,
            refund_response=message,
            status_before_refund=None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_sale(self, sale_id: int) -> Sale:
        sale = self.db.get(Sale, sale_id)
        if sale is None:
            raise NotFoundError(f"Sale with ID {sale_id} not found.", details={"sale_id": sale_id})
        return sale

    @staticmethod
    def _require_text(value: Optional[str], message: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(message)
        return str(value).strip()

    def _guard_open(self, sale: Sale, message: str) -> None:
        if sale.status in CLOSED_STATUSES:
            increment_counter("order_transitions_rejected_total", labels={"status": sale.status.value})
            raise InvalidTransitionError(
                message,
                details={"sale_id": sale.saleID, "status": sale.status.value},
            )

    def _notify_buyer(
        self,
        sale: Sale,
        title: str,
        message: str,
        html_body: str,
        type: NotificationType,
    ) -> None:
        buyer_ids = resolve_user_ids_by_email(self.db, sale.client_email)
        if not buyer_ids:
            self.logger.info("No registered buyer to notify", extra={"sale_id": sale.saleID})
            return
        publish_notification(self.db, buyer_ids, title, message, html_body=html_body, type=type)

    def _transition(self, sale: Sale, new_status: SaleStatus, notify=None, **fields) -> Sale:
        previous = sale.status
        try:
            sale.status = new_status
            for name, value in fields.items():
                setattr(sale, name, value)
            if notify is not None:
                notify()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        increment_counter(
            "order_transitions_total",
            labels={"from_status": previous.value, "to_status": new_status.value},
        )
        record_event(
            "order_status_changed",
            {"sale_id": sale.saleID, "from_status": previous.value, "to_status": new_status.value},
        )
        self.logger.info(
            "Sale %s moved from %s to %s",
            sale.reference,
            previous.value,
            new_status.value,
            extra={"sale_id": sale.saleID},
        )
        dispatch_inline(self.db, self.dispatch_notifications)
        return sale


__all__ = ["OrderLifecycleService", "CLOSED_STATUSES"]
