from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, g, jsonify, request

from storefront.auth import require_auth
from storefront.database import get_db
from storefront.models import Notification
from storefront.services.notification_service import NotificationService

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


def _get_notification_service() -> NotificationService:
    return NotificationService(get_db())


def _serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.notificationID,
        "title": notification.title,
        "message": notification.message,
        "html_body": notification.html_body,
        "type": notification.type.value if notification.type else None,
        "read": notification.read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


@notifications_bp.route("", methods=["GET"])
@require_auth()
def list_notifications():
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    page = request.args.get("page", 1, type=int)
    limit = request.args.get("limit", None, type=int)

    result = _get_notification_service().get_notifications(
        g.current_user.userID,
        page=page,
        limit=limit,
        unread_only=unread_only,
    )
    return jsonify({
        "notifications": [_serialize_notification(n) for n in result["items"]],
        "total": result["total"],
        "page": result["page"],
        "limit": result["limit"],
        "unread_count": result["unread"],
    })


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@require_auth()
def mark_notification_read(notification_id: int):
    service = _get_notification_service()
    notification = service.mark_as_read(g.current_user.userID, notification_id)
    return jsonify({
        "notification": _serialize_notification(notification),
        "unread_count": service.get_unread_count(g.current_user.userID),
    })


@notifications_bp.route("/read-all", methods=["POST"])
@require_auth()
def mark_all_notifications_read():
    count = _get_notification_service().mark_all_as_read(g.current_user.userID)
    return jsonify({
        "success": True,
        "marked_count": count,
        "unread_count": 0,
    })
