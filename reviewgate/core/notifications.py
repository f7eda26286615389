"""
Notification Dispatcher - records ReviewNotification events and hands them to a
transport. Delivery is best-effort and at-least-once: each notification gets one
transport attempt when it is created, and a failed attempt stores its next
attempt time (exponential backoff) for the scheduler's redelivery pass. Nothing
here sleeps, and delivery errors never reach the transition that caused them.

Per-user NotificationSettings decide which review types and priorities a user
hears about, on which channels, how often reminders repeat, and when delivery
is held back (quiet hours, weekends).
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from . import dao
from .config import ReviewConfiguration, get_notification_retry_policy, get_notification_webhook_url
from .errors import DependencyUnavailable, InvalidRequest, NotFound
from .schema import (
    DeliveryStatus,
    NotificationPayload,
    NotificationPriority,
    NotificationSettings,
    NotificationType,
    ReviewNotification,
    ReviewPriority,
    ReviewRequest,
    ReviewStatus,
    utcnow,
)
from ..util.logging import logger

# A notification is given up on after this many redelivery passes.
MAX_DELIVERY_ROUNDS = 5
# Upper bound for the stored backoff between two attempts.
MAX_RETRY_DELAY = timedelta(hours=1)

# Settings fields a user may change (wire names of NotificationSettings.to_dict).
SETTINGS_FIELDS = (
    "email_notifications",
    "in_app_notifications",
    "slack_notifications",
    "reminder_interval_sec",
    "review_types",
    "priorities",
    "weekend_notifications",
    "quiet_hours_start",
    "quiet_hours_end",
)
NULLABLE_SETTINGS = ("reminder_interval_sec", "quiet_hours_start", "quiet_hours_end")

_PRIORITY_MAP = {
    ReviewPriority.LOW: NotificationPriority.LOW,
    ReviewPriority.NORMAL: NotificationPriority.NORMAL,
    ReviewPriority.HIGH: NotificationPriority.HIGH,
    ReviewPriority.CRITICAL: NotificationPriority.URGENT,
    ReviewPriority.URGENT: NotificationPriority.URGENT,
}


class NotificationTransport(ABC):
    """Outbound channel (email, chat, webhook...)."""

    @abstractmethod
    def send(self, notification: ReviewNotification) -> bool:
        """Deliver one notification. Return False or raise on failure."""
        pass


class LoggingTransport(NotificationTransport):
    """Writes notifications to the log. Used when no webhook is configured."""

    def send(self, notification: ReviewNotification) -> bool:
        logger.info(f"[notify] {notification.recipient_id}: {notification.title}")
        return True


class WebhookTransport(NotificationTransport):
    """POSTs the notification as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, notification: ReviewNotification) -> bool:
        response = self.session.post(self.url, json=notification.to_dict(), timeout=self.timeout)
        response.raise_for_status()
        return True


def default_transport() -> NotificationTransport:
    url = get_notification_webhook_url()
    if url:
        return WebhookTransport(url)
    return LoggingTransport()


_TITLES = {
    NotificationType.REVIEW_ASSIGNED: "Review assigned",
    NotificationType.REVIEW_REMINDER: "Review due soon",
    NotificationType.REVIEW_ESCALATED: "Review escalated",
    NotificationType.REVIEW_COMPLETED: "Review completed",
    NotificationType.CHANGES_REQUESTED: "Changes requested",
    NotificationType.REVIEW_CANCELLED: "Review cancelled",
    NotificationType.REVIEW_EXPIRED: "Review expired",
    NotificationType.STEP_ACTIVATED: "Approval step awaiting your decision",
}


class NotificationDispatcher:
    """Creates, stores and delivers notifications."""

    def __init__(self,
                 config_source: Callable[[], ReviewConfiguration],
                 transport: Optional[NotificationTransport] = None,
                 max_attempts: Optional[int] = None,
                 backoff_sec: Optional[float] = None):
        self._config_source = config_source
        self.transport = transport or default_transport()
        default_attempts, default_backoff = get_notification_retry_policy()
        self.max_attempts = max_attempts if max_attempts is not None else default_attempts
        self.backoff_sec = backoff_sec if backoff_sec is not None else default_backoff

    # ------------------------------------------------------------------
    # Per-user settings
    # ------------------------------------------------------------------

    def get_settings(self, user_id: str) -> NotificationSettings:
        """Stored settings for a user, or the defaults when none were saved."""
        return dao.get_notification_settings(user_id) or NotificationSettings(user_id=user_id)

    def update_settings(self, user_id: str, changes: Dict[str, Any],
                        now: Optional[datetime] = None) -> NotificationSettings:
        """Apply a partial update (fields as in NotificationSettings.to_dict) and store it."""
        if not user_id or not user_id.strip():
            raise InvalidRequest("user is required", field="user_id")
        unknown = sorted(set(changes) - set(SETTINGS_FIELDS))
        if unknown:
            raise InvalidRequest(f"unknown notification settings: {', '.join(unknown)}", field=unknown[0])
        for key, value in changes.items():
            if value is None and key not in NULLABLE_SETTINGS:
                raise InvalidRequest(f"{key} cannot be null", field=key)

        data = self.get_settings(user_id).to_dict()
        data.update(changes)
        try:
            settings = NotificationSettings.from_dict(data)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"invalid notification settings: {e}")

        if settings.reminder_interval is not None and settings.reminder_interval <= timedelta(0):
            raise InvalidRequest("reminder interval must be positive", field="reminder_interval_sec")
        if (settings.quiet_hours_start is None) != (settings.quiet_hours_end is None):
            raise InvalidRequest("quiet hours need both a start and an end", field="quiet_hours_start")
        settings.review_types = list(dict.fromkeys(settings.review_types))
        settings.priorities = list(dict.fromkeys(settings.priorities))
        settings.updated_at = now or utcnow()

        dao.save_notification_settings(settings)
        logger.log_operation("notification.settings", "updated", {"user_id": user_id, "fields": sorted(changes)})
        return settings

    def _accepts(self, settings: NotificationSettings, review: ReviewRequest,
                 notification_type: NotificationType, now: datetime) -> bool:
        if not settings.wants(review.review_type, review.priority):
            return False
        if not settings.in_app_notifications and not settings.external_channels:
            return False
        if notification_type == NotificationType.REVIEW_REMINDER and settings.reminder_interval:
            last = dao.last_notification_at(review.id, notification_type, recipient_id=settings.user_id)
            if last is not None and now - last < settings.reminder_interval:
                return False
        return True

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def notify(self,
               review: ReviewRequest,
               recipients: Iterable[Optional[str]],
               notification_type: NotificationType,
               payload: NotificationPayload,
               message: str = "",
               now: Optional[datetime] = None) -> List[ReviewNotification]:
        """
        Record one notification per distinct recipient that wants it and make a
        single delivery attempt. Never raises and never waits: failed or deferred
        deliveries stay pending for redeliver_pending().
        """
        if not self._config_source().notifications_enabled:
            return []

        now = now or utcnow()
        sent = []
        seen = set()
        for recipient in recipients:
            if not recipient or recipient in seen:
                continue
            seen.add(recipient)

            try:
                settings = self.get_settings(recipient)
                if not self._accepts(settings, review, notification_type, now):
                    logger.debug(f"Notification {notification_type.value} for {review.id} "
                                 f"filtered by settings of {recipient}")
                    continue
            except DependencyUnavailable as e:
                logger.warning(f"Notification settings for {recipient} unavailable, using defaults: {e}")
                settings = NotificationSettings(user_id=recipient)

            notification = ReviewNotification(
                id=str(uuid.uuid4()),
                review_request_id=review.id,
                recipient_id=recipient,
                notification_type=notification_type,
                title=f"{_TITLES[notification_type]}: {review.review_type.value}",
                message=message or _default_message(review, notification_type, payload),
                created_at=now,
                payload=payload,
                priority=_PRIORITY_MAP[review.priority],
                channels=settings.external_channels,
            )
            if not notification.channels:
                # In-app only: the stored record is the delivery
                notification.delivery_status = DeliveryStatus.DELIVERED
            else:
                resume_at = settings.next_delivery_time(now)
                if resume_at > now:
                    notification.next_attempt_at = resume_at

            try:
                dao.save_notification(notification)
            except DependencyUnavailable as e:
                logger.warning(f"Notification {notification_type.value} for {review.id} not recorded: {e}")
                continue

            if notification.delivery_status == DeliveryStatus.PENDING and notification.next_attempt_at is None:
                self.deliver(notification, now=now)
            sent.append(notification)
        return sent

    def notify_transition(self,
                          review: ReviewRequest,
                          from_status: ReviewStatus,
                          reason: str = "",
                          workflow_id: Optional[str] = None,
                          step_id: Optional[str] = None,
                          now: Optional[datetime] = None) -> List[ReviewNotification]:
        """Emit the notification matching a request-level status change."""
        payload = NotificationPayload(
            review_id=review.id,
            workflow_id=workflow_id,
            step_id=step_id,
            from_status=from_status.value,
            to_status=review.status.value,
            reason=reason,
        )
        status = review.status
        if status in (ReviewStatus.APPROVED, ReviewStatus.REJECTED):
            return self.notify(review, [review.requested_by, review.assigned_to],
                               NotificationType.REVIEW_COMPLETED, payload, now=now)
        if status == ReviewStatus.REQUIRES_CHANGES:
            return self.notify(review, [review.requested_by], NotificationType.CHANGES_REQUESTED, payload, now=now)
        if status == ReviewStatus.ESCALATED:
            recipients = list(self._config_source().escalation_recipients) + [review.assigned_to]
            return self.notify(review, recipients, NotificationType.REVIEW_ESCALATED, payload, now=now)
        if status == ReviewStatus.CANCELLED:
            return self.notify(review, [review.assigned_to, review.requested_by],
                               NotificationType.REVIEW_CANCELLED, payload, now=now)
        if status == ReviewStatus.EXPIRED:
            return self.notify(review, [review.requested_by, review.assigned_to],
                               NotificationType.REVIEW_EXPIRED, payload, now=now)
        if status == ReviewStatus.IN_REVIEW and review.assigned_to and workflow_id is None:
            return self.notify(review, [review.assigned_to], NotificationType.REVIEW_ASSIGNED, payload, now=now)
        return []

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def retry_delay(self, attempts: int) -> timedelta:
        """Exponential backoff after the given number of failed attempts, capped at MAX_RETRY_DELAY."""
        seconds = self.backoff_sec * (2 ** min(max(attempts - 1, 0), 32))
        return min(timedelta(seconds=seconds), MAX_RETRY_DELAY)

    def deliver(self, notification: ReviewNotification, now: Optional[datetime] = None) -> bool:
        """
        Make one transport attempt. On failure the next attempt is scheduled with
        exponential backoff; after max_attempts * MAX_DELIVERY_ROUNDS attempts the
        notification is marked failed.
        """
        now = now or utcnow()
        notification.delivery_attempts += 1
        notification.last_attempt_at = now
        try:
            delivered = bool(self.transport.send(notification))
        except Exception as e:
            logger.warning(f"Delivery attempt {notification.delivery_attempts} for notification "
                           f"{notification.id} failed: {e}")
            delivered = False

        if delivered:
            notification.delivery_status = DeliveryStatus.DELIVERED
            notification.next_attempt_at = None
        elif notification.delivery_attempts >= self.max_attempts * MAX_DELIVERY_ROUNDS:
            notification.delivery_status = DeliveryStatus.FAILED
            notification.next_attempt_at = None
        else:
            notification.next_attempt_at = now + self.retry_delay(notification.delivery_attempts)

        logger.log_notification(notification.id, notification.notification_type.value, notification.recipient_id,
                                notification.delivery_status.value, notification.delivery_attempts)
        try:
            dao.update_notification_state(notification)
        except DependencyUnavailable as e:
            logger.warning(f"Delivery state for notification {notification.id} not saved: {e}")
        return delivered

    def redeliver_pending(self, limit: int = 100, now: Optional[datetime] = None) -> int:
        """Attempt pending notifications whose next attempt is due. Returns the number delivered."""
        now = now or utcnow()
        delivered = 0
        for notification in dao.list_undelivered_notifications(limit, due_at=now):
            resume_at = self.get_settings(notification.recipient_id).next_delivery_time(now)
            if resume_at > now:
                notification.next_attempt_at = resume_at
                dao.update_notification_state(notification)
                continue
            if self.deliver(notification, now=now):
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def list_notifications(self, recipient_id: str, unread_only: bool = False,
                           page: int = 1, page_size: int = 20) -> List[ReviewNotification]:
        page = max(page, 1)
        return dao.list_notifications(recipient_id=recipient_id, unread_only=unread_only,
                                      limit=page_size, offset=(page - 1) * page_size)

    def mark_read(self, notification_id: str, now: Optional[datetime] = None) -> ReviewNotification:
        """Mark a notification read. Marking it again is a no-op."""
        notification = dao.get_notification(notification_id)
        if notification is None:
            raise NotFound("notification", notification_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = now or utcnow()
            dao.update_notification_state(notification)
        return notification


def _default_message(review: ReviewRequest, notification_type: NotificationType, payload: NotificationPayload) -> str:
    if notification_type == NotificationType.REVIEW_REMINDER:
        return f"Review {review.id} ({review.priority.value} priority) is approaching its deadline."
    if notification_type == NotificationType.STEP_ACTIVATED:
        return f"Step {payload.step_id} of review {review.id} is waiting for your decision."
    if payload.from_status and payload.to_status:
        text = f"Review {review.id} moved from {payload.from_status} to {payload.to_status}."
    else:
        text = f"Review {review.id} needs your attention."
    if payload.reason:
        text += f" Reason: {payload.reason}"
    return text
