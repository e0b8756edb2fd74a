"""Tests for the retry state machine."""

from datetime import timedelta

import pytest

from qcdispatch.db.models import Notification
from qcdispatch.engine.retry import retry_delay, state_of
from qcdispatch.utils.time_utils import utcnow

COUPLE_ID = 1


async def saved_notification(repo, user_id: int, priority: str = "normal", **overrides) -> int:
    fields = dict(
        user_id=user_id,
        couple_id=COUPLE_ID,
        notification_type="check_in_reminder",
        title="Check-in time",
        body="Time for your check in!",
        priority=priority,
        expires_at=utcnow() + timedelta(hours=24),
        occurrence_key=f"retry-test:{user_id}:{priority}",
    )
    fields.update(overrides)
    notification_id, _ = await repo.create_notification(Notification(**fields))
    return notification_id


def test_retry_delay():
    """Delays follow the schedule and clamp to its last entry."""
    assert retry_delay(1) == timedelta(seconds=5)
    assert retry_delay(2) == timedelta(seconds=30)
    assert retry_delay(3) == timedelta(minutes=2)
    assert retry_delay(4) == timedelta(minutes=2)
    assert retry_delay(0) == timedelta(seconds=5)


def test_state_of():
    """The retry state is derived from the stored notification."""
    notification = Notification(user_id=1, notification_type="reminder", title="t", body="b")
    assert state_of(notification) == ("pending", 0)

    notification.metadata = {"next_retry_at": "2026-03-03T19:00:05.000000+00:00"}
    assert state_of(notification) == ("retrying", 0)

    notification.metadata = {"retry_attempts": 2}
    assert state_of(notification) == ("retrying", 2)

    notification.delivered = True
    assert state_of(notification) == ("delivered", 2)

    notification.delivered = False
    notification.failed = True
    assert state_of(notification) == ("exhausted", 2)


@pytest.mark.asyncio
async def test_full_retry_sequence_then_exhausted(pipeline, couple):
    """A notification that never gets through is failed when the retry limit is reached."""
    a, _ = couple
    pipeline.realtime.fail_for(a.id)
    notification_id = await saved_notification(pipeline.repo, a.id, priority="high")

    pipeline.deferrer.schedule(timedelta(0), pipeline.dispatcher.deliver, notification_id)
    await pipeline.deferrer.run_all()

    assert pipeline.deferrer.delays == [
        timedelta(0),
        timedelta(seconds=5),
        timedelta(seconds=30),
        timedelta(minutes=2),
    ]

    notification = await pipeline.repo.get_notification(notification_id)
    assert notification.failed
    assert not notification.delivered
    assert notification.metadata["delivery_attempts"] == 3
    assert notification.metadata["retry_attempts"] == 2
    assert notification.metadata["delivery_failed"] is True
    assert notification.metadata["max_retries_exceeded"] is True
    assert "next_retry_at" not in notification.metadata
    assert state_of(notification) == ("exhausted", 2)

    [(alerted, reason)] = pipeline.alerts.alerts
    assert alerted.id == notification_id
    assert pipeline.realtime.attempts.count(notification_id) == 3
    assert "retry limit of 3" in reason


@pytest.mark.asyncio
async def test_normal_priority_exhaustion_not_escalated(pipeline, couple):
    """Only high and urgent failures reach the admin alert sink."""
    a, _ = couple
    pipeline.realtime.fail_for(a.id)
    notification_id = await saved_notification(pipeline.repo, a.id)

    await pipeline.dispatcher.deliver(notification_id)
    await pipeline.deferrer.run_all()

    assert (await pipeline.repo.get_notification(notification_id)).failed
    assert pipeline.alerts.alerts == []


@pytest.mark.asyncio
async def test_success_on_second_retry(pipeline, couple):
    """A retry that gets through marks the notification delivered."""
    a, _ = couple
    pipeline.realtime.fail_for(a.id, times=2)
    notification_id = await saved_notification(pipeline.repo, a.id)

    await pipeline.dispatcher.deliver(notification_id)
    await pipeline.deferrer.run_all()

    notification = await pipeline.repo.get_notification(notification_id)
    assert notification.delivered
    assert notification.metadata["delivered_on_retry"] == 2
    assert notification.metadata["retry_attempts"] == 1
    assert pipeline.deferrer.delays == [timedelta(seconds=5), timedelta(seconds=30)]
    assert pipeline.realtime.sent == [notification_id]


@pytest.mark.asyncio
async def test_retry_missing_notification(pipeline):
    """A retry for a notification that no longer exists does nothing."""
    await pipeline.retry.retry(9999, 1)

    assert pipeline.deferrer.jobs == []
    assert pipeline.realtime.sent == []


@pytest.mark.asyncio
async def test_retry_settled_notification(pipeline, couple):
    """Retries stop once a notification is delivered."""
    a, _ = couple
    notification_id = await saved_notification(pipeline.repo, a.id)
    await pipeline.repo.mark_delivered(notification_id, utcnow())

    await pipeline.retry.retry(notification_id, 1)

    assert pipeline.realtime.sent == []
    assert pipeline.deferrer.jobs == []


@pytest.mark.asyncio
async def test_retry_expired_notification(pipeline, couple):
    """An expired notification is abandoned without being marked failed."""
    a, _ = couple
    notification_id = await saved_notification(
        pipeline.repo, a.id, priority="high", expires_at=utcnow() - timedelta(seconds=1)
    )
    await pipeline.repo.merge_notification_metadata(notification_id, {"next_retry_at": "x"})

    await pipeline.retry.retry(notification_id, 2)

    notification = await pipeline.repo.get_notification(notification_id)
    assert notification.metadata == {"skipped_reason": "expired"}
    assert not notification.failed
    assert pipeline.realtime.sent == []
    assert pipeline.alerts.alerts == []


@pytest.mark.asyncio
async def test_retry_past_limit_exhausts(pipeline, couple):
    """An attempt number beyond the limit fails the notification outright."""
    a, _ = couple
    notification_id = await saved_notification(pipeline.repo, a.id, priority="urgent")

    await pipeline.retry.retry(notification_id, 4)

    notification = await pipeline.repo.get_notification(notification_id)
    assert notification.failed
    assert pipeline.realtime.sent == []
    assert len(pipeline.alerts.alerts) == 1


@pytest.mark.asyncio
async def test_exhaust_only_alerts_once(pipeline, couple):
    """A notification already failed is not escalated again."""
    a, _ = couple
    notification_id = await saved_notification(pipeline.repo, a.id, priority="high")
    notification = await pipeline.repo.get_notification(notification_id)

    await pipeline.retry._exhaust(notification, utcnow())
    await pipeline.retry._exhaust(notification, utcnow())

    assert len(pipeline.alerts.alerts) == 1


@pytest.mark.asyncio
async def test_retry_at_limit_exhausts_without_sending(pipeline, couple):
    """The attempt that reaches the limit marks the notification failed without a send."""
    a, _ = couple
    pipeline.realtime.fail_for(a.id)
    notification_id = await saved_notification(pipeline.repo, a.id, priority="urgent")

    await pipeline.retry.retry(notification_id, 3)

    notification = await pipeline.repo.get_notification(notification_id)
    assert notification.failed
    assert pipeline.realtime.attempts == []
    assert "delivery_attempts" not in notification.metadata
    assert pipeline.deferrer.jobs == []
