"""Data models."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from qcdispatch.utils.constants import ACTION_REQUIRED_TYPES, PRIORITIES

Frequency = Literal[
    "once", "daily", "weekly", "biweekly", "monthly", "quarterly", "yearly", "custom"
]
Priority = Literal["low", "normal", "high", "urgent"]


@dataclass
class User:
    """A notification recipient and their delivery preferences."""

    couple_id: int | None = None
    email: str | None = None
    telegram_chat_id: int | None = None  # push token
    push_enabled: bool = True
    email_enabled: bool = True
    notification_preferences: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    def has_disabled(self, notification_type: str) -> bool:
        """Check whether the user turned this notification type off."""
        return self.notification_preferences.get(f"disable_{notification_type}") is True

    @property
    def wants_email_for_actions(self) -> bool:
        return self.notification_preferences.get("email_for_actions") is not False


@dataclass
class Reminder:
    """A schedulable intent, fanned out to recipients when it fires."""

    couple_id: int
    title: str
    scheduled_for: datetime  # UTC
    frequency: Frequency = "once"
    message: str | None = None
    category: str = "check_in"
    priority: Priority = "normal"
    custom_schedule: dict[str, Any] = field(default_factory=dict)
    recipient_ids: list[int] = field(default_factory=list)  # empty = whole couple
    next_occurrence: datetime | None = None  # UTC
    last_triggered_at: datetime | None = None  # UTC
    trigger_count: int = 0
    is_active: bool = True
    is_snoozed: bool = False
    snooze_until: datetime | None = None  # UTC
    ends_at: datetime | None = None  # UTC
    action_url: str | None = None
    expires_in: timedelta | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @property
    def is_recurring(self) -> bool:
        return self.frequency != "once"

    @property
    def target(self) -> datetime:
        """The instant this reminder is currently due."""
        return self.next_occurrence or self.scheduled_for


@dataclass
class Notification:
    """One delivery target for one recipient."""

    user_id: int
    notification_type: str
    title: str
    body: str
    priority: Priority = "normal"
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None  # UTC
    delivered: bool = False
    delivered_at: datetime | None = None
    failed: bool = False
    failed_at: datetime | None = None
    couple_id: int | None = None
    occurrence_key: str | None = None
    created_at: datetime | None = None
    id: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.delivered or self.failed

    @property
    def high_priority(self) -> bool:
        return PRIORITIES[self.priority] >= PRIORITIES["high"]

    @property
    def action_required(self) -> bool:
        return self.notification_type in ACTION_REQUIRED_TYPES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass
class NotificationEvent:
    """A directly-created event to fan out, e.g. a milestone announcement."""

    notification_type: str
    title: str
    body: str
    recipient_ids: list[int]
    occurrence_key: str  # one notification per recipient per key
    priority: Priority = "normal"
    data: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    couple_id: int | None = None


@dataclass
class Milestone:
    """An achievement a couple earned, recorded once per key."""

    couple_id: int
    category: str
    milestone_key: str
    title: str
    description: str
    achieved_at: datetime  # UTC
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


@dataclass
class MetricSnapshot:
    """Aggregated metrics for one couple, computed upstream."""

    couple_id: int
    metrics: dict[str, Any]
    computed_at: datetime | None = None
