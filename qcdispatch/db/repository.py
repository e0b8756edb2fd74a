"""Database repository - all SQL queries.

Every mutation the pipeline performs is a single conditional statement so
concurrent workers never overwrite each other's state: compare-and-set on
``last_triggered_at`` for reminders, ``INSERT OR IGNORE`` against unique
indexes for notifications and milestones, and ``json_set``/``json_patch``
for notification metadata.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, List

import aiosqlite

from qcdispatch.db.models import MetricSnapshot, Milestone, Notification, Reminder, User
from qcdispatch.utils.errors import StoreTransientError
from qcdispatch.utils.time_utils import from_storage, to_storage

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("locked", "busy", "timeout", "unable to open")

# Only touch notifications that have not reached a terminal state
_OPEN = "delivered = 0 AND failed = 0"


class Repository:
    """Database access layer."""

    def __init__(self, db_path: Path | str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open database connection."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        logger.info(f"Connected to database at {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Database connection closed")

    @property
    def db(self) -> aiosqlite.Connection:
        """Get the database connection."""
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Translate lock/busy errors into StoreTransientError."""
        try:
            yield
        except aiosqlite.OperationalError as e:
            if any(marker in str(e).lower() for marker in _TRANSIENT_MARKERS):
                raise StoreTransientError(f"{operation}: {e}") from e
            raise

    async def _write(self, operation: str, sql: str, params: Any = ()) -> aiosqlite.Cursor:
        """Execute a single write statement and commit it."""
        async with self._guard(operation):
            cursor = await self.db.execute(sql, params)
            await self.db.commit()
            return cursor

    # User operations

    async def create_user(self, user: User) -> User:
        """Create a recipient."""
        cursor = await self._write(
            "create_user",
            """
            INSERT INTO users (
                couple_id, email, telegram_chat_id, push_enabled, email_enabled,
                notification_preferences
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user.couple_id,
                user.email,
                user.telegram_chat_id,
                1 if user.push_enabled else 0,
                1 if user.email_enabled else 0,
                json.dumps(user.notification_preferences),
            ),
        )
        user.id = cursor.lastrowid
        return user

    async def get_user(self, user_id: int) -> User | None:
        """Get a recipient by ID."""
        async with self._guard("get_user"):
            async with self.db.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_user(row) if row else None

    async def get_couple_members(self, couple_id: int) -> List[User]:
        """Get both members of a couple."""
        async with self._guard("get_couple_members"):
            async with self.db.execute(
                "SELECT * FROM users WHERE couple_id = ? ORDER BY id", (couple_id,)
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_user(row) for row in rows]

    # Reminder operations

    async def create_reminder(self, reminder: Reminder) -> Reminder:
        """Create a new reminder."""
        cursor = await self._write(
            "create_reminder",
            """
            INSERT INTO reminders (
                couple_id, title, message, category, frequency, priority,
                custom_schedule, recipient_ids, scheduled_for, next_occurrence,
                last_triggered_at, trigger_count, is_active, is_snoozed,
                snooze_until, ends_at, action_url, expires_in_seconds
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._reminder_params(reminder),
        )
        reminder.id = cursor.lastrowid
        return reminder

    async def get_reminder(self, reminder_id: int) -> Reminder | None:
        """Get a reminder by ID."""
        async with self._guard("get_reminder"):
            async with self.db.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_reminder(row) if row else None

    async def find_due(self, now: datetime, window: timedelta) -> List[Reminder]:
        """Get active, unsnoozed reminders whose target is within now +/- window/2."""
        half = window / 2
        async with self._guard("find_due"):
            async with self.db.execute(
                """
                SELECT * FROM reminders
                WHERE is_active = 1
                AND (
                    is_snoozed = 0
                    OR (snooze_until IS NOT NULL AND snooze_until <= :now)
                )
                AND COALESCE(next_occurrence, scheduled_for) BETWEEN :start AND :end
                ORDER BY COALESCE(next_occurrence, scheduled_for), id
                """,
                {
                    "now": to_storage(now),
                    "start": to_storage(now - half),
                    "end": to_storage(now + half),
                },
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_reminder(row) for row in rows]

    async def find_missed(self, now: datetime, window: timedelta) -> List[Reminder]:
        """Get active reminders whose due window closed before now."""
        async with self._guard("find_missed"):
            async with self.db.execute(
                """
                SELECT * FROM reminders
                WHERE is_active = 1
                AND COALESCE(next_occurrence, scheduled_for) < ?
                ORDER BY id
                """,
                (to_storage(now - window / 2),),
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_reminder(row) for row in rows]

    async def clear_snooze(self, reminder_id: int, now: datetime) -> bool:
        """Clear a snooze that has run out."""
        cursor = await self._write(
            "clear_snooze",
            """
            UPDATE reminders SET is_snoozed = 0, snooze_until = NULL, updated_at = ?
            WHERE id = ? AND is_snoozed = 1 AND snooze_until <= ?
            """,
            (to_storage(now), reminder_id, to_storage(now)),
        )
        return cursor.rowcount == 1

    async def claim_reminder(
        self, reminder_id: int, expected_last_triggered_at: datetime | None, now: datetime
    ) -> bool:
        """Claim a reminder for triggering.

        Succeeds only if nobody else has triggered it since we read it.
        """
        cursor = await self._write(
            "claim_reminder",
            """
            UPDATE reminders SET
                last_triggered_at = ?,
                trigger_count = trigger_count + 1,
                updated_at = ?
            WHERE id = ? AND is_active = 1 AND last_triggered_at IS ?
            """,
            (
                to_storage(now),
                to_storage(now),
                reminder_id,
                to_storage(expected_last_triggered_at),
            ),
        )
        return cursor.rowcount == 1

    async def release_claim(
        self, reminder_id: int, claimed_at: datetime, previous: datetime | None
    ) -> bool:
        """Undo a claim whose fan-out failed, so the next pass retries it."""
        cursor = await self._write(
            "release_claim",
            """
            UPDATE reminders SET
                last_triggered_at = ?,
                trigger_count = trigger_count - 1
            WHERE id = ? AND last_triggered_at = ?
            """,
            (to_storage(previous), reminder_id, to_storage(claimed_at)),
        )
        return cursor.rowcount == 1

    async def schedule_next(self, reminder_id: int, next_occurrence: datetime) -> None:
        """Persist a reminder's next occurrence."""
        await self._write(
            "schedule_next",
            "UPDATE reminders SET next_occurrence = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now') WHERE id = ?",
            (to_storage(next_occurrence), reminder_id),
        )

    async def deactivate_reminder(self, reminder_id: int) -> None:
        """Flag a reminder inactive; it is never selected again."""
        await self._write(
            "deactivate_reminder",
            "UPDATE reminders SET is_active = 0, updated_at = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now') WHERE id = ?",
            (reminder_id,),
        )

    async def save_reminder(self, reminder: Reminder) -> None:
        """Update every field of a reminder."""
        await self._write(
            "save_reminder",
            """
            UPDATE reminders SET
                couple_id = ?,
                title = ?,
                message = ?,
                category = ?,
                frequency = ?,
                priority = ?,
                custom_schedule = ?,
                recipient_ids = ?,
                scheduled_for = ?,
                next_occurrence = ?,
                last_triggered_at = ?,
                trigger_count = ?,
                is_active = ?,
                is_snoozed = ?,
                snooze_until = ?,
                ends_at = ?,
                action_url = ?,
                expires_in_seconds = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')
            WHERE id = ?
            """,
            (*self._reminder_params(reminder), reminder.id),
        )

    # Notification operations

    async def create_notification(self, notification: Notification) -> tuple[int, bool]:
        """Create a notification unless one exists for its occurrence key.

        Returns:
            Tuple of (notification id, whether it was newly created)
        """
        cursor = await self._write(
            "create_notification",
            """
            INSERT OR IGNORE INTO notifications (
                user_id, couple_id, notification_type, title, body, priority,
                data, metadata, expires_at, occurrence_key
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.user_id,
                notification.couple_id,
                notification.notification_type,
                notification.title,
                notification.body,
                notification.priority,
                json.dumps(notification.data, default=str),
                json.dumps(notification.metadata, default=str),
                to_storage(notification.expires_at),
                notification.occurrence_key,
            ),
        )
        if cursor.rowcount == 1:
            return cursor.lastrowid, True

        async with self._guard("create_notification"):
            async with self.db.execute(
                "SELECT id FROM notifications WHERE occurrence_key = ?",
                (notification.occurrence_key,),
            ) as existing:
                row = await existing.fetchone()
        return row["id"], False

    async def get_notification(self, notification_id: int) -> Notification | None:
        """Get a notification by ID."""
        async with self._guard("get_notification"):
            async with self.db.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_notification(row) if row else None

    async def get_notifications(self, user_id: int) -> List[Notification]:
        """Get a user's notifications, oldest first."""
        async with self._guard("get_notifications"):
            async with self.db.execute(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY id", (user_id,)
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_notification(row) for row in rows]

    async def find_open_notifications(self, now: datetime) -> List[Notification]:
        """Get unexpired notifications that are neither settled nor skipped."""
        async with self._guard("find_open_notifications"):
            async with self.db.execute(
                """
                SELECT * FROM notifications
                WHERE delivered = 0 AND failed = 0
                AND json_extract(metadata, '$.skipped_reason') IS NULL
                AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY id
                """,
                (to_storage(now),),
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_notification(row) for row in rows]

    async def merge_notification_metadata(
        self, notification_id: int, patch: dict[str, Any]
    ) -> bool:
        """Merge keys into an open notification's metadata."""
        cursor = await self._write(
            "merge_notification_metadata",
            f"""
            UPDATE notifications SET metadata = json_patch(metadata, ?)
            WHERE id = ? AND {_OPEN}
            """,
            (json.dumps(patch, default=str), notification_id),
        )
        return cursor.rowcount == 1

    async def mark_delivered(
        self, notification_id: int, now: datetime, patch: dict[str, Any] | None = None
    ) -> bool:
        """Mark an open notification delivered."""
        cursor = await self._write(
            "mark_delivered",
            f"""
            UPDATE notifications SET
                delivered = 1,
                delivered_at = ?,
                metadata = json_patch(metadata, ?)
            WHERE id = ? AND {_OPEN}
            """,
            (to_storage(now), json.dumps(patch or {}, default=str), notification_id),
        )
        return cursor.rowcount == 1

    async def record_delivery_failure(
        self,
        notification_id: int,
        error: str,
        now: datetime,
        failed_channels: list[str] | None = None,
        is_retry: bool = False,
    ) -> bool:
        """Count one failed delivery attempt against an open notification."""
        cursor = await self._write(
            "record_delivery_failure",
            f"""
            UPDATE notifications SET metadata = json_set(
                metadata,
                '$.delivery_attempts',
                COALESCE(json_extract(metadata, '$.delivery_attempts'), 0) + 1,
                '$.retry_attempts',
                COALESCE(json_extract(metadata, '$.retry_attempts'), 0) + ?,
                '$.last_delivery_error', ?,
                '$.last_delivery_attempt', ?,
                '$.failed_channels', json(?)
            )
            WHERE id = ? AND {_OPEN}
            """,
            (
                1 if is_retry else 0,
                error,
                to_storage(now),
                json.dumps(failed_channels or []),
                notification_id,
            ),
        )
        return cursor.rowcount == 1

    async def mark_failed(
        self, notification_id: int, now: datetime, patch: dict[str, Any] | None = None
    ) -> bool:
        """Mark an open notification permanently failed."""
        cursor = await self._write(
            "mark_failed",
            f"""
            UPDATE notifications SET
                failed = 1,
                failed_at = ?,
                metadata = json_patch(metadata, ?)
            WHERE id = ? AND {_OPEN}
            """,
            (to_storage(now), json.dumps(patch or {}, default=str), notification_id),
        )
        return cursor.rowcount == 1

    # Milestone operations

    async def create_milestone_if_absent(self, milestone: Milestone) -> int | None:
        """Insert a milestone unless the couple already has its key.

        Returns:
            The new milestone id, or None if the key was already recorded
        """
        cursor = await self._write(
            "create_milestone_if_absent",
            """
            INSERT OR IGNORE INTO milestones (
                couple_id, category, milestone_key, title, description,
                achieved_at, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                milestone.couple_id,
                milestone.category,
                milestone.milestone_key,
                milestone.title,
                milestone.description,
                to_storage(milestone.achieved_at),
                json.dumps(milestone.metadata, default=str),
            ),
        )
        if cursor.rowcount != 1:
            return None
        milestone.id = cursor.lastrowid
        return milestone.id

    async def get_milestones(self, couple_id: int) -> List[Milestone]:
        """Get a couple's milestones in the order they were achieved."""
        async with self._guard("get_milestones"):
            async with self.db.execute(
                "SELECT * FROM milestones WHERE couple_id = ? ORDER BY id", (couple_id,)
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_milestone(row) for row in rows]

    async def count_milestones_since(self, couple_id: int, since: datetime) -> int:
        """Count milestones a couple achieved at or after since."""
        async with self._guard("count_milestones_since"):
            async with self.db.execute(
                "SELECT COUNT(*) FROM milestones WHERE couple_id = ? AND achieved_at >= ?",
                (couple_id, to_storage(since)),
            ) as cursor:
                row = await cursor.fetchone()
                return row[0]

    # Metrics (written upstream)

    async def upsert_metric_snapshot(self, snapshot: MetricSnapshot) -> None:
        """Store the latest aggregated metrics for a couple."""
        await self._write(
            "upsert_metric_snapshot",
            """
            INSERT INTO couple_metrics (couple_id, metrics, computed_at) VALUES (?, ?, ?)
            ON CONFLICT (couple_id) DO UPDATE SET
                metrics = excluded.metrics,
                computed_at = excluded.computed_at
            """,
            (
                snapshot.couple_id,
                json.dumps(snapshot.metrics, default=str),
                to_storage(snapshot.computed_at),
            ),
        )

    async def list_metric_snapshots(self) -> List[MetricSnapshot]:
        """Get the latest metrics for every couple."""
        async with self._guard("list_metric_snapshots"):
            async with self.db.execute(
                "SELECT * FROM couple_metrics ORDER BY couple_id"
            ) as cursor:
                rows = await cursor.fetchall()
                return [
                    MetricSnapshot(
                        couple_id=row["couple_id"],
                        metrics=json.loads(row["metrics"]),
                        computed_at=from_storage(row["computed_at"]),
                    )
                    for row in rows
                ]

    # Realtime outbox

    async def append_broadcast(self, stream: str, payload: dict[str, Any]) -> int:
        """Queue a realtime message on a stream."""
        cursor = await self._write(
            "append_broadcast",
            "INSERT INTO broadcasts (stream, payload) VALUES (?, ?)",
            (stream, json.dumps(payload, default=str)),
        )
        return cursor.lastrowid

    async def get_broadcasts(self, stream: str, after_id: int = 0) -> List[dict[str, Any]]:
        """Read a stream's messages after the given id."""
        async with self._guard("get_broadcasts"):
            async with self.db.execute(
                "SELECT * FROM broadcasts WHERE stream = ? AND id > ? ORDER BY id",
                (stream, after_id),
            ) as cursor:
                rows = await cursor.fetchall()
                return [
                    {"id": row["id"], "stream": row["stream"], **json.loads(row["payload"])}
                    for row in rows
                ]

    # Helper methods

    def _reminder_params(self, reminder: Reminder) -> tuple:
        return (
            reminder.couple_id,
            reminder.title,
            reminder.message,
            reminder.category,
            reminder.frequency,
            reminder.priority,
            json.dumps(reminder.custom_schedule),
            json.dumps(reminder.recipient_ids),
            to_storage(reminder.scheduled_for),
            to_storage(reminder.next_occurrence),
            to_storage(reminder.last_triggered_at),
            reminder.trigger_count,
            1 if reminder.is_active else 0,
            1 if reminder.is_snoozed else 0,
            to_storage(reminder.snooze_until),
            to_storage(reminder.ends_at),
            reminder.action_url,
            int(reminder.expires_in.total_seconds()) if reminder.expires_in else None,
        )

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        """Convert a database row to a User object."""
        return User(
            id=row["id"],
            couple_id=row["couple_id"],
            email=row["email"],
            telegram_chat_id=row["telegram_chat_id"],
            push_enabled=bool(row["push_enabled"]),
            email_enabled=bool(row["email_enabled"]),
            notification_preferences=json.loads(row["notification_preferences"]),
        )

    def _row_to_reminder(self, row: aiosqlite.Row) -> Reminder:
        """Convert a database row to a Reminder object."""
        return Reminder(
            id=row["id"],
            couple_id=row["couple_id"],
            title=row["title"],
            message=row["message"],
            category=row["category"],
            frequency=row["frequency"],  # type: ignore
            priority=row["priority"],  # type: ignore
            custom_schedule=json.loads(row["custom_schedule"]),
            recipient_ids=json.loads(row["recipient_ids"]),
            scheduled_for=from_storage(row["scheduled_for"]),
            next_occurrence=from_storage(row["next_occurrence"]),
            last_triggered_at=from_storage(row["last_triggered_at"]),
            trigger_count=row["trigger_count"],
            is_active=bool(row["is_active"]),
            is_snoozed=bool(row["is_snoozed"]),
            snooze_until=from_storage(row["snooze_until"]),
            ends_at=from_storage(row["ends_at"]),
            action_url=row["action_url"],
            expires_in=timedelta(seconds=row["expires_in_seconds"])
            if row["expires_in_seconds"]
            else None,
            created_at=from_storage(row["created_at"]),
            updated_at=from_storage(row["updated_at"]),
        )

    def _row_to_notification(self, row: aiosqlite.Row) -> Notification:
        """Convert a database row to a Notification object."""
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            couple_id=row["couple_id"],
            notification_type=row["notification_type"],
            title=row["title"],
            body=row["body"],
            priority=row["priority"],  # type: ignore
            data=json.loads(row["data"]),
            metadata=json.loads(row["metadata"]),
            expires_at=from_storage(row["expires_at"]),
            delivered=bool(row["delivered"]),
            delivered_at=from_storage(row["delivered_at"]),
            failed=bool(row["failed"]),
            failed_at=from_storage(row["failed_at"]),
            occurrence_key=row["occurrence_key"],
            created_at=from_storage(row["created_at"]),
        )

    def _row_to_milestone(self, row: aiosqlite.Row) -> Milestone:
        """Convert a database row to a Milestone object."""
        return Milestone(
            id=row["id"],
            couple_id=row["couple_id"],
            category=row["category"],
            milestone_key=row["milestone_key"],
            title=row["title"],
            description=row["description"],
            achieved_at=from_storage(row["achieved_at"]),
            metadata=json.loads(row["metadata"]),
        )
