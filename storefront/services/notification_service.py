"""
Notification Service

Implements the Publish-Subscribe pattern for order and payment notifications.

Publishers (order lifecycle, payment reconciliation) never write notifications
directly. They call ``publish_notification`` which stores an OutboxMessage in
the same transaction as the state change. ``NotificationDispatcher`` later
hands each pending message to the subscriber (``NotificationService``), which
persists one Notification row per recipient.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import bleach
from sqlalchemy import desc
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import NotFoundError
from storefront.models import (
    Notification,
    NotificationType,
    OutboxMessage,
    OutboxStatus,
    User,
)
from storefront.observability import increment_counter, record_event
from storefront.services.discount_service import to_store_time

NOTIFICATION_TOPIC = "notification"

# Markup allowed in stored html bodies; everything else is stripped
ALLOWED_TAGS = ["a", "b", "br", "em", "i", "li", "p", "strong", "ul"]
ALLOWED_ATTRIBUTES = {"a": ["href", "title"]}

logger = logging.getLogger(__name__)


def clean_text(value: Optional[str]) -> str:
    """Strip every tag from user-supplied text before it is interpolated into html."""
    return bleach.clean(value or "", tags=[], strip=True)


def clean_html(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return bleach.clean(value, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)


def format_display_date(value: datetime) -> str:
    """Human date for messages, e.g. "Monday, March 2, 2026 at 3:05 PM"."""
    local = to_store_time(value)
    hour = local.hour % 12 or 12
    return f"{local:%A, %B} {local.day}, {local.year} at {hour}:{local:%M} {local:%p}"


def resolve_user_ids_by_email(db: Session, email: Optional[str]) -> List[int]:
    if not email:
        return []
    user = db.query(User).filter(User.email == email).first()
    return [user.userID] if user else []


def publish_notification(
    db: Session,
    user_ids: Iterable[int],
    title: str,
    message: str,
    html_body: Optional[str] = None,
    type: NotificationType | str = NotificationType.INFO,
) -> Optional[OutboxMessage]:
    """
    Queue a notification for delivery.

    The message is added to the caller's session and is committed (or rolled
    back) together with the caller's own changes. Returns None when there is
    nobody to notify.
    """
    recipients = sorted({int(user_id) for user_id in user_ids or []})
    if not recipients:
        return None

    notification_type = NotificationType(type)
    outbox = OutboxMessage(topic=NOTIFICATION_TOPIC)
    outbox.payload = {
        "user_ids": recipients,
        "title": title,
        "message": message,
        "html_body": clean_html(html_body),
        "type": notification_type.value,
        "published_at": datetime.now(timezone.utc).isoformat(),
    }
    db.add(outbox)

    increment_counter("notifications_published_total", labels={"type": notification_type.value})
    record_event(
        "notification_published",
        {"user_ids": recipients, "title": title, "type": notification_type.value},
    )
    return outbox


class NotificationService:
    """
    Database-backed notification store for users.

    Architectural Pattern: Publish-Subscribe (Subscriber for order events)
    - Receives messages from the dispatcher
    - Stores notifications per user
    - Provides unread count and paginated lists for the API
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def create_notification(
        self,
        user_ids: Iterable[int],
        title: str,
        message: str,
        html_body: Optional[str] = None,
        type: NotificationType | str = NotificationType.INFO,
        commit: bool = True,
    ) -> List[Notification]:
        notification_type = NotificationType(type)
        wanted = {int(user_id) for user_id in user_ids or []}
        known = set()
        if wanted:
            rows = self.db.query(User.userID).filter(User.userID.in_(wanted)).all()
            known = {user_id for (user_id,) in rows}

        missing = wanted - known
        if missing:
            self.logger.warning(
                "Skipping notification for unknown users",
                extra={"user_ids": sorted(missing), "title": title},
            )

        created = []
        for user_id in sorted(known):
            notification = Notification(
                userID=user_id,
                title=title,
                message=message,
                html_body=clean_html(html_body),
                type=notification_type,
            )
            self.db.add(notification)
            created.append(notification)

        if commit:
            self.db.commit()
        else:
            self.db.flush()

        for notification in created:
            increment_counter("notifications_created_total", labels={"type": notification_type.value})
        self.logger.info(
            "Created %d notification(s): %s",
            len(created),
            title,
        )
        return created

    def get_notifications(
        self,
        user_id: int,
        page: int = 1,
        limit: Optional[int] = None,
        unread_only: bool = False,
    ) -> Dict[str, Any]:
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or Config.DEFAULT_PAGE_SIZE), 1), Config.MAX_PAGE_SIZE)

        query = self.db.query(Notification).filter(Notification.userID == user_id)
        if unread_only:
            query = query.filter(Notification.read.is_(False))
        total = query.count()
        items = (
            query.order_by(desc(Notification.created_at), desc(Notification.notificationID))
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "unread": self.get_unread_count(user_id),
        }

    def get_unread_count(self, user_id: int) -> int:
        return (
            self.db.query(Notification)
            .filter(Notification.userID == user_id, Notification.read.is_(False))
            .count()
        )

    def mark_as_read(self, user_id: int, notification_id: int) -> Notification:
        notification = (
            self.db.query(Notification)
            .filter_by(notificationID=notification_id, userID=user_id)
            .first()
        )
        if notification is None:
            raise NotFoundError(
                "Notification not found",
                details={"notification_id": notification_id},
            )
        notification.mark_read()
        self.db.commit()
        return notification

    def mark_all_as_read(self, user_id: int) -> int:
        unread = (
            self.db.query(Notification)
            .filter(Notification.userID == user_id, Notification.read.is_(False))
            .all()
        )
        for notification in unread:
            notification.mark_read()
        self.db.commit()
        self.logger.info("Marked %d notifications read for user %s", len(unread), user_id)
        return len(unread)


class NotificationDispatcher:
    """
    Delivers pending outbox messages to the notification store.

    Each message is committed on its own. A failing message is marked failed
    and logged; it never affects the others or the transaction that queued it.
    """

    def __init__(self, db_session: Session, sink: Optional[NotificationService] = None) -> None:
        self.db = db_session
        self.sink = sink or NotificationService(db_session)
        self.logger = logging.getLogger(__name__)

    def dispatch_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        limit = limit or Config.NOTIFICATION_DISPATCH_BATCH
        pending = (
            self.db.query(OutboxMessage)
            .filter(
                OutboxMessage.topic == NOTIFICATION_TOPIC,
                OutboxMessage.status == OutboxStatus.PENDING,
            )
            .order_by(OutboxMessage.messageID)
            .limit(limit)
            .all()
        )

        result = {"delivered": 0, "failed": 0}
        for message in pending:
            if self._deliver(message):
                result["delivered"] += 1
            else:
                result["failed"] += 1
        if pending:
            self.logger.info("Notification dispatch finished", extra=result)
        return result

    def _deliver(self, message: OutboxMessage) -> bool:
        message_id = message.messageID
        payload = message.payload
        try:
            self.sink.create_notification(
                user_ids=payload.get("user_ids", []),
                title=payload.get("title", ""),
                message=payload.get("message", ""),
                html_body=payload.get("html_body"),
                type=payload.get("type", NotificationType.INFO.value),
                commit=False,
            )
            message.mark_delivered()
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            self.logger.exception(
                "Notification delivery failed",
                extra={"message_id": message_id},
            )
            failed = self.db.get(OutboxMessage, message_id)
            if failed is not None:
                failed.mark_failed(str(exc) or type(exc).__name__)
                self.db.commit()
            increment_counter("notifications_failed_total")
            return False

        increment_counter("notifications_delivered_total")
        return True


def dispatch_inline(db: Session, enabled: Optional[bool] = None) -> None:
    """Run the dispatcher right after a committed transition, when enabled."""
    if enabled is None:
        enabled = Config.NOTIFICATIONS_DISPATCH_INLINE
    if not enabled:
        return
    try:
        NotificationDispatcher(db).dispatch_pending()
    except Exception:
        # The transition is already committed; pending messages stay queued
        db.rollback()
        logger.exception("Inline notification dispatch failed")


__all__ = [
    "NOTIFICATION_TOPIC",
    "clean_text",
    "clean_html",
    "format_display_date",
    "resolve_user_ids_by_email",
    "publish_notification",
    "NotificationService",
    "NotificationDispatcher",
    "dispatch_inline",
]
