"""
Notification dispatcher tests - delivery backoff, redelivery, per-user settings,
read state and the webhook transport.
"""

from datetime import datetime, time, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from reviewgate.core import dao
from reviewgate.core.config import ReviewConfiguration
from reviewgate.core.errors import InvalidRequest, NotFound
from reviewgate.core.notifications import (
    MAX_DELIVERY_ROUNDS,
    MAX_RETRY_DELAY,
    LoggingTransport,
    NotificationDispatcher,
    WebhookTransport,
    default_transport,
)
from reviewgate.core.schema import (
    DeliveryStatus,
    NotificationPayload,
    NotificationPriority,
    NotificationSettings,
    NotificationType,
    ReviewPriority,
    ReviewRequest,
    ReviewStatus,
    ReviewType,
)


@pytest.fixture
def review(t0):
    return ReviewRequest(
        id="r-1",
        original_query="churned accounts",
        generated_sql="SELECT id FROM accounts WHERE churned",
        review_type=ReviewType.BUSINESS_LOGIC,
        requested_by="alice",
        created_at=t0,
        status=ReviewStatus.IN_REVIEW,
        priority=ReviewPriority.CRITICAL,
        assigned_to="ba1",
    )


def _dispatcher(transport, config=None, **kwargs):
    config = config or ReviewConfiguration()
    kwargs.setdefault("backoff_sec", 1.0)
    return NotificationDispatcher(lambda: config, transport=transport, **kwargs)


def _assigned(dispatcher, review, now, recipients=("ba1",)):
    return dispatcher.notify(review, list(recipients), NotificationType.REVIEW_ASSIGNED,
                             NotificationPayload(review_id=review.id), now=now)


class TestNotify:

    def test_one_notification_per_distinct_recipient(self, review, transport, t0):
        dispatcher = _dispatcher(transport)
        payload = NotificationPayload(review_id=review.id)
        sent = dispatcher.notify(review, ["ba1", None, "po1", "ba1"], NotificationType.REVIEW_REMINDER, payload, now=t0)

        assert [n.recipient_id for n in sent] == ["ba1", "po1"]
        assert transport.send.call_count == 2
        assert all(n.delivery_status == DeliveryStatus.DELIVERED for n in sent)
        assert sent[0].priority == NotificationPriority.URGENT
        assert sent[0].channels == ["email"]
        assert dao.get_notification(sent[0].id).delivery_status == DeliveryStatus.DELIVERED

    def test_disabled_notifications(self, review, transport, t0):
        dispatcher = _dispatcher(transport, config=ReviewConfiguration(notifications_enabled=False))
        sent = dispatcher.notify(review, ["ba1"], NotificationType.REVIEW_REMINDER,
                                 NotificationPayload(review_id=review.id), now=t0)
        assert sent == []
        transport.send.assert_not_called()

    def test_transition_notifications(self, review, transport, t0):
        dispatcher = _dispatcher(transport, config=ReviewConfiguration(escalation_recipients=("oncall",)))

        review.status = ReviewStatus.ESCALATED
        sent = dispatcher.notify_transition(review, ReviewStatus.IN_REVIEW, reason="stuck", now=t0)
        assert {n.recipient_id for n in sent} == {"oncall", "ba1"}
        assert all(n.notification_type == NotificationType.REVIEW_ESCALATED for n in sent)
        assert sent[0].payload.from_status == "in_review"
        assert sent[0].payload.to_status == "escalated"

        review.status = ReviewStatus.REQUIRES_CHANGES
        sent = dispatcher.notify_transition(review, ReviewStatus.IN_REVIEW, now=t0)
        assert [(n.recipient_id, n.notification_type) for n in sent] == [("alice", NotificationType.CHANGES_REQUESTED)]


class TestDelivery:

    def test_failed_attempt_is_scheduled_not_retried_inline(self, review, t0):
        transport = MagicMock()
        transport.send.side_effect = ConnectionError("down")
        dispatcher = _dispatcher(transport, max_attempts=3)

        sent = _assigned(dispatcher, review, t0, recipients=("ba1", "po1"))

        assert transport.send.call_count == 2
        for notification in sent:
            assert notification.delivery_status == DeliveryStatus.PENDING
            assert notification.delivery_attempts == 1
            assert notification.next_attempt_at == t0 + timedelta(seconds=1)
        assert dao.get_notification(sent[0].id).next_attempt_at == t0 + timedelta(seconds=1)

    def test_backoff_is_applied_by_redelivery(self, review, t0):
        transport = MagicMock()
        transport.send.side_effect = [ConnectionError("down"), ConnectionError("still down"), True]
        dispatcher = _dispatcher(transport, max_attempts=3)
        sent = _assigned(dispatcher, review, t0)

        # Not due yet
        assert dispatcher.redeliver_pending(now=t0) == 0
        assert transport.send.call_count == 1

        assert dispatcher.redeliver_pending(now=t0 + timedelta(seconds=1)) == 0
        assert dao.get_notification(sent[0].id).next_attempt_at == t0 + timedelta(seconds=3)

        assert dispatcher.redeliver_pending(now=t0 + timedelta(seconds=2)) == 0
        assert dispatcher.redeliver_pending(now=t0 + timedelta(seconds=3)) == 1

        stored = dao.get_notification(sent[0].id)
        assert stored.delivery_status == DeliveryStatus.DELIVERED
        assert stored.delivery_attempts == 3
        assert stored.next_attempt_at is None

    def test_retry_delay_is_capped(self, transport):
        dispatcher = _dispatcher(transport, backoff_sec=2.0)
        assert dispatcher.retry_delay(1) == timedelta(seconds=2)
        assert dispatcher.retry_delay(3) == timedelta(seconds=8)
        assert dispatcher.retry_delay(40) == MAX_RETRY_DELAY

    def test_failure_never_reaches_caller(self, review, t0):
        transport = MagicMock()
        transport.send.side_effect = RuntimeError("boom")
        dispatcher = _dispatcher(transport, max_attempts=2)

        sent = _assigned(dispatcher, review, t0)
        assert sent[0].delivery_status == DeliveryStatus.PENDING
        assert sent[0].delivery_attempts == 1
        assert [n.id for n in dao.list_undelivered_notifications()] == [sent[0].id]

    def test_redelivery_pass(self, review, t0):
        transport = MagicMock()
        transport.send.side_effect = RuntimeError("boom")
        dispatcher = _dispatcher(transport, max_attempts=1)
        sent = _assigned(dispatcher, review, t0)

        transport.send.side_effect = None
        transport.send.return_value = True
        assert dispatcher.redeliver_pending(now=t0 + timedelta(seconds=1)) == 1

        stored = dao.get_notification(sent[0].id)
        assert stored.delivery_status == DeliveryStatus.DELIVERED
        assert stored.delivery_attempts == 2
        assert dao.list_undelivered_notifications() == []

    def test_gives_up_after_max_rounds(self, review, t0):
        transport = MagicMock()
        transport.send.return_value = False
        dispatcher = _dispatcher(transport, max_attempts=1)
        sent = _assigned(dispatcher, review, t0)

        for hour in range(1, MAX_DELIVERY_ROUNDS):
            dispatcher.redeliver_pending(now=t0 + timedelta(hours=hour))

        stored = dao.get_notification(sent[0].id)
        assert stored.delivery_status == DeliveryStatus.FAILED
        assert stored.delivery_attempts == MAX_DELIVERY_ROUNDS
        assert stored.next_attempt_at is None
        assert dispatcher.redeliver_pending(now=t0 + timedelta(days=1)) == 0
        assert transport.send.call_count == MAX_DELIVERY_ROUNDS


class TestSettings:

    def test_defaults_when_nothing_stored(self, transport):
        settings = _dispatcher(transport).get_settings("ba1")
        assert settings.email_notifications and settings.in_app_notifications
        assert not settings.slack_notifications
        assert settings.review_types == list(ReviewType)
        assert settings.priorities == list(ReviewPriority)
        assert settings.quiet_hours_start is None
        assert settings.weekend_notifications is True

    def test_partial_update_is_stored(self, transport, t0):
        dispatcher = _dispatcher(transport)
        dispatcher.update_settings("ba1", {"slack_notifications": True, "priorities": ["high", "critical"],
                                           "quiet_hours_start": "18:00", "quiet_hours_end": "08:00"}, now=t0)

        stored = dispatcher.get_settings("ba1")
        assert stored.email_notifications is True
        assert stored.external_channels == ["email", "slack"]
        assert stored.priorities == [ReviewPriority.HIGH, ReviewPriority.CRITICAL]
        assert stored.quiet_hours_start == time(18, 0)
        assert stored.updated_at == t0

        dispatcher.update_settings("ba1", {"quiet_hours_start": None, "quiet_hours_end": None}, now=t0)
        assert dispatcher.get_settings("ba1").quiet_hours_start is None

    @pytest.mark.parametrize("changes", [
        {"sms_notifications": True},
        {"user_id": "po1"},
        {"email_notifications": None},
        {"review_types": ["vibes"]},
        {"priorities": ["whenever"]},
        {"reminder_interval_sec": 0},
        {"reminder_interval_sec": -60},
        {"quiet_hours_start": "22:00"},
        {"quiet_hours_start": "late", "quiet_hours_end": "07:00"},
    ])
    def test_invalid_updates_are_rejected(self, transport, changes):
        dispatcher = _dispatcher(transport)
        with pytest.raises(InvalidRequest):
            dispatcher.update_settings("ba1", changes)
        assert dao.get_notification_settings("ba1") is None

    def test_filters_by_review_type_and_priority(self, review, transport, t0):
        dispatcher = _dispatcher(transport)
        dispatcher.update_settings("ba1", {"review_types": ["sql_validation"]})
        dispatcher.update_settings("po1", {"priorities": ["low", "normal"]})
        dispatcher.update_settings("lead1", {"review_types": ["business_logic"], "priorities": ["critical"]})

        sent = _assigned(dispatcher, review, t0, recipients=("ba1", "po1", "lead1"))

        assert [n.recipient_id for n in sent] == ["lead1"]
        assert transport.send.call_count == 1

    def test_in_app_only_skips_the_transport(self, review, transport, t0):
        dispatcher = _dispatcher(transport)
        dispatcher.update_settings("ba1", {"email_notifications": False})

        sent = _assigned(dispatcher, review, t0)

        assert sent[0].channels == []
        assert sent[0].delivery_status == DeliveryStatus.DELIVERED
        assert sent[0].delivery_attempts == 0
        transport.send.assert_not_called()
        assert len(dispatcher.list_notifications("ba1")) == 1

    def test_every_channel_off_means_nothing_is_recorded(self, review, transport, t0):
        dispatcher = _dispatcher(transport)
        dispatcher.update_settings("ba1", {"email_notifications": False, "in_app_notifications": False})

        assert _assigned(dispatcher, review, t0) == []
        assert dispatcher.list_notifications("ba1") == []

    def test_quiet_hours_defer_delivery(self, review, transport, t0):
        dispatcher = _dispatcher(transport)
        dispatcher.update_settings("ba1", {"quiet_hours_start": "08:00", "quiet_hours_end": "17:00"})

        sent = _assigned(dispatcher, review, t0)
        resume_at = datetime(2025, 3, 3, 17, 0, tzinfo=timezone.utc)

        assert sent[0].delivery_status == DeliveryStatus.PENDING
        assert sent[0].next_attempt_at == resume_at
        transport.send.assert_not_called()

        assert dispatcher.redeliver_pending(now=resume_at - timedelta(minutes=1)) == 0
        assert dispatcher.redeliver_pending(now=resume_at) == 1
        assert dao.get_notification(sent[0].id).delivery_status == DeliveryStatus.DELIVERED

    def test_redelivery_respects_quiet_hours_set_later(self, review, t0):
        transport = MagicMock()
        transport.send.side_effect = [ConnectionError("down"), True]
        dispatcher = _dispatcher(transport)
        sent = _assigned(dispatcher, review, t0)

        dispatcher.update_settings("ba1", {"quiet_hours_start": "09:00", "quiet_hours_end": "10:00"})
        assert dispatcher.redeliver_pending(now=t0 + timedelta(seconds=1)) == 0
        assert transport.send.call_count == 1
        assert dao.get_notification(sent[0].id).next_attempt_at == t0 + timedelta(hours=1)

        assert dispatcher.redeliver_pending(now=t0 + timedelta(hours=1)) == 1

    def test_reminder_interval_per_recipient(self, review, transport, t0):
        dispatcher = _dispatcher(transport)
        dispatcher.update_settings("ba1", {"reminder_interval_sec": 7200})

        def remind(now):
            return dispatcher.notify(review, ["ba1", "po1"], NotificationType.REVIEW_REMINDER,
                                     NotificationPayload(review_id=review.id), now=now)

        assert [n.recipient_id for n in remind(t0)] == ["ba1", "po1"]
        assert [n.recipient_id for n in remind(t0 + timedelta(hours=1))] == ["po1"]
        assert [n.recipient_id for n in remind(t0 + timedelta(hours=2))] == ["ba1", "po1"]

    def test_quiet_hours_wrap_past_midnight(self):
        settings = NotificationSettings(user_id="ba1", quiet_hours_start=time(22, 0), quiet_hours_end=time(7, 0))
        monday_night = datetime(2025, 3, 3, 23, 30, tzinfo=timezone.utc)

        assert settings.in_quiet_hours(monday_night)
        assert settings.in_quiet_hours(datetime(2025, 3, 4, 6, 59, tzinfo=timezone.utc))
        assert not settings.in_quiet_hours(datetime(2025, 3, 4, 7, 0, tzinfo=timezone.utc))
        assert settings.next_delivery_time(monday_night) == datetime(2025, 3, 4, 7, 0, tzinfo=timezone.utc)

    def test_weekend_delivery_moves_to_monday(self):
        settings = NotificationSettings(user_id="ba1", weekend_notifications=False,
                                        quiet_hours_start=time(0, 0), quiet_hours_end=time(8, 0))
        saturday = datetime(2025, 3, 8, 10, 0, tzinfo=timezone.utc)

        assert settings.next_delivery_time(saturday) == datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)
        friday = datetime(2025, 3, 7, 10, 0, tzinfo=timezone.utc)
        assert settings.next_delivery_time(friday) == friday


class TestReadState:

    def test_mark_read_is_idempotent(self, review, transport, t0):
        dispatcher = _dispatcher(transport)
        sent = _assigned(dispatcher, review, t0)

        first = dispatcher.mark_read(sent[0].id, now=t0)
        second = dispatcher.mark_read(sent[0].id)
        assert first.is_read and second.is_read
        assert second.read_at == t0

        assert dispatcher.list_notifications("ba1", unread_only=True) == []
        assert len(dispatcher.list_notifications("ba1")) == 1

    def test_mark_unknown(self, transport):
        with pytest.raises(NotFound):
            _dispatcher(transport).mark_read("missing")


class TestTransports:

    def test_webhook_posts_json(self, review, transport, t0):
        session = MagicMock()
        webhook = WebhookTransport("https://hooks.example.com/review", timeout=2.0, session=session)
        notification = _assigned(_dispatcher(transport), review, t0)[0]

        assert webhook.send(notification) is True
        session.post.assert_called_once_with("https://hooks.example.com/review", json=notification.to_dict(),
                                             timeout=2.0)
        session.post.return_value.raise_for_status.assert_called_once()

    def test_webhook_http_error_propagates(self, review, transport, t0):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
        webhook = WebhookTransport("https://hooks.example.com/review", session=session)
        notification = _assigned(_dispatcher(transport), review, t0)[0]
        with pytest.raises(requests.HTTPError):
            webhook.send(notification)

    def test_default_transport(self, monkeypatch):
        assert isinstance(default_transport(), LoggingTransport)
        monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/review")
        transport = default_transport()
        assert isinstance(transport, WebhookTransport)
        assert transport.url == "https://hooks.example.com/review"
