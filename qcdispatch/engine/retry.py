"""Retry coordinator - bounded backoff for failed deliveries.

State machine per notification:

    Pending -> Retrying(n) -> Delivered | Exhausted

The initial dispatch failure is attempt 0. Attempts are scheduled at +5s,
+30s and +2min after each preceding failure; the attempt that reaches
MAX_RETRIES does not send, it marks the notification failed.
Re-attempts are deferred jobs, never blocking waits.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Literal, Protocol, TypeVar

from qcdispatch.channels.alerts import AdminAlertSink, LogAdminAlertSink
from qcdispatch.channels.gateway import DeliveryChannelGateway
from qcdispatch.db.models import Notification
from qcdispatch.db.repository import Repository
from qcdispatch.utils.constants import CHANNEL_REALTIME, MAX_RETRIES, RETRY_DELAYS
from qcdispatch.utils.errors import (
    DeliveryChannelError,
    ExhaustedRetries,
    NotFoundTransient,
    with_store_retry,
)
from qcdispatch.utils.time_utils import format_duration, from_storage, to_storage, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryState = Literal["pending", "retrying", "delivered", "exhausted"]


class Deferrer(Protocol):
    def schedule(
        self, delay: timedelta, func: Callable[..., Awaitable[Any]], *args: Any, name: str | None = None
    ) -> None: ...


def retry_delay(attempt: int, delays: tuple[timedelta, ...] = RETRY_DELAYS) -> timedelta:
    """Delay before the given retry attempt (1-based), clamped to the last entry."""
    index = min(max(attempt, 1) - 1, len(delays) - 1)
    return delays[index]


def state_of(notification: Notification) -> tuple[RetryState, int]:
    """Where a notification sits in the retry state machine.

    Returns:
        Tuple of (state, retry attempts made so far)
    """
    attempts = int(notification.metadata.get("retry_attempts", 0))
    if notification.delivered:
        return "delivered", attempts
    if notification.failed:
        return "exhausted", attempts
    if notification.metadata.get("next_retry_at") or attempts:
        return "retrying", attempts
    return "pending", attempts


class RetryCoordinator:
    """Owns the retry policy for notifications whose realtime delivery failed."""

    def __init__(
        self,
        repo: Repository,
        gateway: DeliveryChannelGateway,
        deferrer: Deferrer,
        alert_sink: AdminAlertSink | None = None,
        delays: tuple[timedelta, ...] = RETRY_DELAYS,
        max_retries: int = MAX_RETRIES,
        store_attempts: int = 5,
    ):
        if not delays:
            raise ValueError("At least one retry delay is required")
        self.repo = repo
        self.gateway = gateway
        self.deferrer = deferrer
        self.alert_sink = alert_sink or LogAdminAlertSink()
        self.delays = tuple(delays)
        self.max_retries = max_retries
        self.store_attempts = store_attempts

    def delay(self, attempt: int) -> timedelta:
        return retry_delay(attempt, self.delays)

    async def start(self, notification: Notification, now: datetime | None = None) -> None:
        """Begin retrying after the initial delivery failure."""
        now = now or utcnow()

        if self.max_retries < 1:
            await self._exhaust(notification, now)
            return

        delay = self.delay(1)
        await self._store(
            f"schedule retry for notification {notification.id}",
            lambda: self.repo.merge_notification_metadata(
                notification.id, {"next_retry_at": to_storage(now + delay)}
            ),
        )
        self._defer(notification.id, 1, delay)

    async def resume(self, notification: Notification, now: datetime | None = None) -> None:
        """Re-enqueue the next retry of a notification from its stored metadata.

        Used after a restart, when the deferred jobs held in memory are gone.
        An overdue retry runs straight away; one still ahead keeps its time.
        """
        now = now or utcnow()
        attempt = int(notification.metadata.get("retry_attempts", 0)) + 1

        next_retry_at = from_storage(notification.metadata.get("next_retry_at"))
        if next_retry_at is None:
            # Failure was recorded but the retry never got scheduled
            next_retry_at = now + self.delay(attempt)
            await self._store(
                f"schedule retry for notification {notification.id}",
                lambda: self.repo.merge_notification_metadata(
                    notification.id, {"next_retry_at": to_storage(next_retry_at)}
                ),
            )

        delay = max(next_retry_at - now, timedelta(0))
        self._defer(notification.id, attempt, delay)
        logger.info(
            f"Resumed retry {attempt} for notification {notification.id} "
            f"in {format_duration(delay)}"
        )

    async def retry(self, notification_id: int, attempt: int, now: datetime | None = None) -> None:
        """Re-attempt realtime delivery of a notification."""
        now = now or utcnow()

        try:
            notification = await self._load(notification_id)
        except NotFoundTransient:
            logger.debug(f"Notification {notification_id} no longer exists, dropping retry {attempt}")
            return

        if notification.is_terminal:
            logger.debug(f"Notification {notification_id} already settled, dropping retry {attempt}")
            return

        if notification.is_expired(now):
            logger.info(f"Notification {notification_id} expired, abandoning retries")
            await self._store(
                f"abandon notification {notification_id}",
                lambda: self.repo.merge_notification_metadata(
                    notification_id, {"skipped_reason": "expired", "next_retry_at": None}
                ),
            )
            return

        if attempt >= self.max_retries:
            await self._exhaust(notification, now)
            return

        try:
            await self.gateway.send(CHANNEL_REALTIME, notification)
        except DeliveryChannelError as e:
            await self._record_failure(notification, attempt, e, now)
            return

        delivered = await self._store(
            f"mark notification {notification_id} delivered",
            lambda: self.repo.mark_delivered(
                notification_id,
                now,
                {"retry_successful": True, "delivered_on_retry": attempt, "next_retry_at": None},
            ),
        )
        if delivered:
            logger.info(f"Notification {notification_id} delivered on retry {attempt}")

    async def _record_failure(
        self, notification: Notification, attempt: int, error: DeliveryChannelError, now: datetime
    ) -> None:
        notification_id = notification.id
        await self._store(
            f"record failure for notification {notification_id}",
            lambda: self.repo.record_delivery_failure(
                notification_id, str(error), now, [CHANNEL_REALTIME], is_retry=True
            ),
        )

        delay = self.delay(attempt + 1)
        await self._store(
            f"schedule retry for notification {notification_id}",
            lambda: self.repo.merge_notification_metadata(
                notification_id, {"next_retry_at": to_storage(now + delay)}
            ),
        )
        self._defer(notification_id, attempt + 1, delay)
        logger.warning(
            f"Retry {attempt} failed for notification {notification_id}: {error}; "
            f"next attempt in {format_duration(delay)}"
        )

    async def _exhaust(self, notification: Notification, now: datetime) -> None:
        """Terminal failure: mark failed and escalate high-priority notifications."""
        error = ExhaustedRetries(
            f"Notification {notification.id} reached the retry limit of {self.max_retries}"
        )
        marked = await self._store(
            f"mark notification {notification.id} failed",
            lambda: self.repo.mark_failed(
                notification.id,
                now,
                {"delivery_failed": True, "max_retries_exceeded": True, "next_retry_at": None},
            ),
        )
        if not marked:
            return

        logger.error(str(error))

        if notification.high_priority:
            latest = await self.repo.get_notification(notification.id) or notification
            await self.alert_sink.alert(latest, str(error))

    def _defer(self, notification_id: int, attempt: int, delay: timedelta) -> None:
        self.deferrer.schedule(
            delay,
            self.retry,
            notification_id,
            attempt,
            name=f"retry_notification_{notification_id}_{attempt}",
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
