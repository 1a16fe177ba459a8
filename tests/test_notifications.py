from datetime import datetime, timezone

import pytest

from storefront.errors import NotFoundError
from storefront.models import Notification, NotificationType, OutboxMessage, OutboxStatus
from storefront.observability import counter_value
from storefront.services.notification_service import (
    NotificationDispatcher,
    NotificationService,
    format_display_date,
    publish_notification,
)


class ExplodingSink:
    """Fails for one title and delivers everything else to the real store."""

    def __init__(self, db_session, poisoned_title):
        self.store = NotificationService(db_session)
        self.poisoned_title = poisoned_title

    def create_notification(self, **kwargs):
        if kwargs["title"] == self.poisoned_title:
            raise RuntimeError("mail relay down")
        return self.store.create_notification(**kwargs)


def test_publish_without_recipients_queues_nothing(db_session):
    assert publish_notification(db_session, [], "Hello", "Nobody home") is None
    db_session.commit()
    assert db_session.query(OutboxMessage).count() == 0


def test_failed_message_does_not_block_the_others(db_session, make_user):
    user = make_user()
    publish_notification(db_session, [user.userID], "First", "one")
    publish_notification(db_session, [user.userID], "Broken", "two")
    publish_notification(db_session, [user.userID], "Third", "three")
    db_session.commit()

    result = NotificationDispatcher(db_session, sink=ExplodingSink(db_session, "Broken")).dispatch_pending()

    assert result == {"delivered": 2, "failed": 1}
    db_session.expire_all()
    titles = sorted(n.title for n in db_session.query(Notification).filter_by(userID=user.userID))
    assert titles == ["First", "Third"]
    failed = db_session.query(OutboxMessage).filter_by(status=OutboxStatus.FAILED).one()
    assert failed.payload["title"] == "Broken"
    assert failed.error_message == "mail relay down"
    assert counter_value("notifications_failed_total") == 1

    # Nothing left to deliver on the next run
    assert NotificationDispatcher(db_session).dispatch_pending() == {"delivered": 0, "failed": 0}


def test_html_body_is_sanitized(db_session, make_user):
    user = make_user()
    publish_notification(
        db_session,
        [user.userID],
        "Promo",
        "plain",
        html_body='<p>Hi <script>alert(1)</script><strong>there</strong></p>',
        type=NotificationType.INFO,
    )
    db_session.commit()
    NotificationDispatcher(db_session).dispatch_pending()

    notification = db_session.query(Notification).filter_by(userID=user.userID).one()
    assert "<script>" not in notification.html_body
    assert "<strong>there</strong>" in notification.html_body


def test_unknown_recipients_are_skipped(db_session, make_user):
    user = make_user()

    created = NotificationService(db_session).create_notification([user.userID, 987654], "Hi", "there")

    assert [n.userID for n in created] == [user.userID]


def test_read_state_and_paging(db_session, make_user):
    user = make_user()
    other = make_user()
    service = NotificationService(db_session)
    service.create_notification([user.userID], "One", "1")
    service.create_notification([user.userID], "Two", "2")
    theirs = service.create_notification([other.userID], "Private", "p")[0]

    page = service.get_notifications(user.userID, page=1, limit=1)
    assert page["total"] == 2
    assert len(page["items"]) == 1
    assert page["unread"] == 2

    first = page["items"][0]
    service.mark_as_read(user.userID, first.notificationID)
    assert first.read and first.read_at is not None
    assert service.get_unread_count(user.userID) == 1
    assert service.get_notifications(user.userID, unread_only=True)["total"] == 1

    with pytest.raises(NotFoundError):
        service.mark_as_read(user.userID, theirs.notificationID)

    assert service.mark_all_as_read(user.userID) == 1
    assert service.get_unread_count(user.userID) == 0
    assert service.get_unread_count(other.userID) == 1


def test_display_date_format():
    moment = datetime(2026, 3, 2, 15, 5, tzinfo=timezone.utc)

    assert format_display_date(moment) == "Monday, March 2, 2026 at 3:05 PM"
