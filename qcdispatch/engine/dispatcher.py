"""Notification dispatcher - fan-out and first-attempt delivery.

A triggered reminder (or a directly-created event) becomes one notification
per recipient, keyed by occurrence so repeating a fan-out never creates
duplicates. Delivery always goes out on the realtime channel; push and email
are added for important or actionable notifications. Only the realtime
outcome decides between delivered and the retry path.
"""

import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from qcdispatch.channels.gateway import DeliveryChannelGateway
from qcdispatch.db.models import Notification, NotificationEvent, Reminder, User
from qcdispatch.db.repository import Repository
from qcdispatch.engine.retry import Deferrer, RetryCoordinator, state_of
from qcdispatch.utils.constants import (
    CATEGORY_ACTIONS,
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    CHANNEL_REALTIME,
    DEFAULT_NOTIFICATION_TTL,
    DEFAULT_PRIORITY,
    LOW_PRIORITY_BATCH_DELAY,
    PRIORITIES,
    SLOW_DELIVERY_THRESHOLD,
)
from qcdispatch.utils.errors import DeliveryChannelError, NotFoundTransient, with_store_retry
from qcdispatch.utils.time_utils import to_storage, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

REMINDER_NOTIFICATION_TYPE = "check_in_reminder"


def occurrence_key(reminder: Reminder, user_id: int) -> str:
    """Idempotency key for one reminder occurrence and one recipient."""
    return f"reminder:{reminder.id}:{to_storage(reminder.target)}:{user_id}"


def reminder_priority(reminder: Reminder) -> str:
    return reminder.priority if reminder.priority in PRIORITIES else DEFAULT_PRIORITY


def awaiting_first_delivery(notification: Notification) -> bool:
    """True while nothing has been sent, skipped or retried for a notification."""
    return not (
        notification.is_terminal
        or notification.metadata.get("delivery_attempts")
        or notification.metadata.get("skipped_reason")
        or state_of(notification)[0] != "pending"
    )


def reminder_payload(reminder: Reminder) -> dict[str, Any]:
    """Context the client needs to act on a reminder notification."""
    return {
        "reminder_id": reminder.id,
        "category": reminder.category,
        "scheduled_time": to_storage(reminder.target),
        "action_url": reminder.action_url or CATEGORY_ACTIONS.get(reminder.category, "/reminders"),
    }


class NotificationDispatcher:
    """Creates per-recipient notifications and performs their first delivery."""

    def __init__(
        self,
        repo: Repository,
        gateway: DeliveryChannelGateway,
        retry: RetryCoordinator,
        deferrer: Deferrer,
        ttl: timedelta = DEFAULT_NOTIFICATION_TTL,
        low_priority_delay: timedelta = LOW_PRIORITY_BATCH_DELAY,
        store_attempts: int = 5,
    ):
        self.repo = repo
        self.gateway = gateway
        self.retry = retry
        self.deferrer = deferrer
        self.ttl = ttl
        self.low_priority_delay = low_priority_delay
        self.store_attempts = store_attempts
        self.metrics: Counter[str] = Counter()

    async def fan_out(
        self, source: Reminder | NotificationEvent, now: datetime | None = None
    ) -> list[int]:
        """Create one notification per recipient and start delivering them.

        Urgent notifications are delivered before this returns; the rest are
        handed to the deferred queue, low priority after a short batch delay.

        Returns:
            IDs of the notifications for this occurrence, including ones a
            previous fan-out already created
        """
        now = now or utcnow()

        if isinstance(source, Reminder):
            notifications = await self._from_reminder(source, now)
        else:
            notifications = await self._from_event(source, now)

        notification_ids = []
        for notification in notifications:
            notification_id, created = await self._store(
                f"create notification {notification.occurrence_key}",
                lambda: self.repo.create_notification(notification),
            )
            notification_ids.append(notification_id)

            if created:
                self.metrics[f"created.{notification.notification_type}"] += 1
            else:
                logger.debug(f"Notification {notification.occurrence_key} already exists as {notification_id}")
                # Deferred deliveries are already queued; an urgent one left
                # undelivered by an interrupted fan-out is not
                if notification.priority != "urgent":
                    continue
                existing = await self._load(notification_id)
                if not awaiting_first_delivery(existing):
                    continue

            if notification.priority == "urgent":
                await self.deliver(notification_id, now=now)
            else:
                self._defer_delivery(notification_id, notification.priority)

        return notification_ids

    async def notify_couple(
        self,
        couple_id: int,
        notification_type: str,
        title: str,
        body: str,
        occurrence_key: str,
        priority: str = DEFAULT_PRIORITY,
        data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> list[int]:
        """Fan an event out to both members of a couple."""
        members = await self._store(
            f"load members of couple {couple_id}",
            lambda: self.repo.get_couple_members(couple_id),
        )
        event = NotificationEvent(
            notification_type=notification_type,
            title=title,
            body=body,
            recipient_ids=[member.id for member in members],
            occurrence_key=occurrence_key,
            priority=priority,  # type: ignore
            data=data or {},
            couple_id=couple_id,
        )
        return await self.fan_out(event, now=now)

    async def deliver(self, notification_id: int, now: datetime | None = None) -> bool:
        """Attempt first delivery of a notification.

        Returns:
            True if the realtime channel accepted it
        """
        now = now or utcnow()
        started = time.monotonic()

        try:
            notification = await self._load(notification_id)
        except NotFoundTransient:
            logger.debug(f"Notification {notification_id} vanished before delivery")
            return False

        if notification.is_terminal:
            return notification.delivered

        if not awaiting_first_delivery(notification):
            logger.debug(f"Notification {notification_id} already attempted, leaving it to retries")
            return False

        if notification.is_expired(now):
            await self._skip(notification, "expired")
            return False

        user = await self._store(
            f"load user {notification.user_id}",
            lambda: self.repo.get_user(notification.user_id),
        )
        if user is not None and user.has_disabled(notification.notification_type):
            await self._skip(notification, "user_disabled")
            return False

        realtime_error: DeliveryChannelError | None = None
        try:
            await self.gateway.send(CHANNEL_REALTIME, notification, user)
        except DeliveryChannelError as e:
            realtime_error = e

        sent_channels = [] if realtime_error else [CHANNEL_REALTIME]
        failed_channels = [CHANNEL_REALTIME] if realtime_error else []
        for channel in self._secondary_channels(notification, user):
            try:
                await self.gateway.send(channel, notification, user)
                sent_channels.append(channel)
                self.metrics[f"sent.{channel}"] += 1
            except DeliveryChannelError as e:
                failed_channels.append(channel)
                self.metrics[f"failed.{channel}"] += 1
                logger.warning(f"{channel} delivery failed for notification {notification_id}: {e}")

        if realtime_error is not None:
            self.metrics[f"failed.{notification.notification_type}"] += 1
            logger.warning(
                f"Realtime delivery failed for notification {notification_id}: {realtime_error}"
            )
            await self._store(
                f"record failure for notification {notification_id}",
                lambda: self.repo.record_delivery_failure(
                    notification_id, str(realtime_error), now, failed_channels
                ),
            )
            await self.retry.start(notification, now=now)
            return False

        patch: dict[str, Any] = {"channels": sent_channels}
        if failed_channels:
            patch["failed_channels"] = failed_channels

        await self._store(
            f"mark notification {notification_id} delivered",
            lambda: self.repo.mark_delivered(notification_id, now, patch),
        )
        self.metrics[f"delivered.{notification.notification_type}"] += 1

        elapsed = time.monotonic() - started
        if elapsed > SLOW_DELIVERY_THRESHOLD.total_seconds():
            logger.warning(f"Slow delivery for notification {notification_id}: {elapsed:.2f}s")

        return True

    async def resume_pending(self, now: datetime | None = None) -> int:
        """Re-enqueue open notifications after a restart.

        Notifications never attempted go back on the delivery queue; ones that
        already failed resume their retry schedule.

        Returns:
            Number of notifications re-enqueued
        """
        now = now or utcnow()
        open_notifications = await self._store(
            "find open notifications",
            lambda: self.repo.find_open_notifications(now),
        )

        for notification in open_notifications:
            if awaiting_first_delivery(notification):
                self._defer_delivery(notification.id, notification.priority)
            else:
                await self.retry.resume(notification, now=now)

        if open_notifications:
            logger.info(f"Recovery: re-enqueued {len(open_notifications)} open notifications")
        return len(open_notifications)

    def metrics_snapshot(self) -> dict[str, int]:
        """Per-type created/delivered/failed counters since startup."""
        return dict(self.metrics)

    def _defer_delivery(self, notification_id: int, priority: str) -> None:
        delay = self.low_priority_delay if priority == "low" else timedelta(0)
        self.deferrer.schedule(
            delay, self.deliver, notification_id, name=f"deliver_notification_{notification_id}"
        )

    async def _from_reminder(self, reminder: Reminder, now: datetime) -> list[Notification]:
        if reminder.recipient_ids:
            recipient_ids = list(reminder.recipient_ids)
        else:
            members = await self._store(
                f"load members of couple {reminder.couple_id}",
                lambda: self.repo.get_couple_members(reminder.couple_id),
            )
            recipient_ids = [member.id for member in members]

        if not recipient_ids:
            logger.warning(f"Reminder {reminder.id} has no recipients")

        expires_at = now + (reminder.expires_in or self.ttl)
        return [
            Notification(
                user_id=user_id,
                couple_id=reminder.couple_id,
                notification_type=REMINDER_NOTIFICATION_TYPE,
                title=reminder.title,
                body=reminder.message or f"Time for your {reminder.category.replace('_', ' ')}!",
                priority=reminder_priority(reminder),  # type: ignore
                data=reminder_payload(reminder),
                expires_at=expires_at,
                occurrence_key=occurrence_key(reminder, user_id),
            )
            for user_id in recipient_ids
        ]

    async def _from_event(self, event: NotificationEvent, now: datetime) -> list[Notification]:
        expires_at = event.expires_at or now + self.ttl
        return [
            Notification(
                user_id=user_id,
                couple_id=event.couple_id,
                notification_type=event.notification_type,
                title=event.title,
                body=event.body,
                priority=event.priority if event.priority in PRIORITIES else DEFAULT_PRIORITY,  # type: ignore
                data=dict(event.data),
                expires_at=expires_at,
                occurrence_key=f"{event.occurrence_key}:{user_id}",
            )
            for user_id in event.recipient_ids
        ]

    def _secondary_channels(self, notification: Notification, user: User | None) -> list[str]:
        """Push and email channels that apply to this notification and recipient."""
        if user is None:
            return []

        channels = []
        if (
            user.push_enabled
            and user.telegram_chat_id
            and (notification.high_priority or notification.action_required)
        ):
            channels.append(CHANNEL_PUSH)

        if user.email_enabled and notification.action_required and user.wants_email_for_actions:
            channels.append(CHANNEL_EMAIL)

        return [channel for channel in channels if self.gateway.has_channel(channel)]

    async def _skip(self, notification: Notification, reason: str) -> None:
        logger.info(f"Skipping notification {notification.id}: {reason}")
        self.metrics[f"skipped.{reason}"] += 1
        await self._store(
            f"skip notification {notification.id}",
            lambda: self.repo.merge_notification_metadata(
                notification.id, {"skipped_reason": reason}
            ),
        )

    async def _load(self, notification_id: int) -> Notification:
        notification = await self._store(
            f"load notification {notification_id}",
            lambda: self.repo.get_notification(notification_id),
        )
        if notification is None:
            raise NotFoundTransient(f"Notification {notification_id} not found")
        return notification

    async def _store(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_store_retry(
            operation, attempts=self.store_attempts, description=description
        )
