"""Reminder scheduler - the heartbeat that fires due reminders."""

import logging
from datetime import datetime, timedelta

from qcdispatch.db.models import Reminder
from qcdispatch.db.repository import Repository
from qcdispatch.engine.dispatcher import NotificationDispatcher
from qcdispatch.engine.recurrence import Predicate, next_occurrence, validate_schedule
from qcdispatch.utils.constants import DEFAULT_DUE_WINDOW, PRIORITIES
from qcdispatch.utils.errors import ScheduleValidationError, with_store_retry
from qcdispatch.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def dispatch_order(reminders: list[Reminder]) -> list[Reminder]:
    """Urgent first, then high, normal, low; by target time within a priority."""
    return sorted(
        reminders,
        key=lambda r: (-PRIORITIES.get(r.priority, PRIORITIES["normal"]), r.target),
    )


class ReminderScheduler:
    """Finds due reminders, fans them out and works out when they fire next."""

    def __init__(
        self,
        repo: Repository,
        dispatcher: NotificationDispatcher,
        window: timedelta = DEFAULT_DUE_WINDOW,
        predicates: dict[str, Predicate] | None = None,
        store_attempts: int = 5,
    ):
        self.repo = repo
        self.dispatcher = dispatcher
        self.window = window
        self.predicates = predicates or {}
        self.store_attempts = store_attempts

    async def process_due(
        self, now: datetime | None = None, window: timedelta | None = None
    ) -> list[int]:
        """Trigger every reminder whose target lies within now +/- window/2.

        Returns:
            IDs of the reminders fanned out in this pass
        """
        now = now or utcnow()
        window = window or self.window

        due = await with_store_retry(
            lambda: self.repo.find_due(now, window),
            attempts=self.store_attempts,
            description="find due reminders",
        )
        if not due:
            return []

        logger.info(f"Scheduler: {len(due)} reminders due")

        triggered = []
        for reminder in dispatch_order(due):
            try:
                if await self._process(reminder, now, window):
                    triggered.append(reminder.id)
            except Exception as e:
                logger.error(f"Error processing reminder {reminder.id}: {e}", exc_info=True)
                continue

        return triggered

    async def roll_forward_missed(
        self, now: datetime | None = None, window: timedelta | None = None
    ) -> int:
        """Move reminders whose due window closed untriggered past now.

        The missed occurrence is lost rather than fired late: recurring
        reminders jump to their first occurrence still ahead of the window,
        one-shots are deactivated.

        Returns:
            Number of reminders updated
        """
        now = now or utcnow()
        window = window or self.window

        missed = await with_store_retry(
            lambda: self.repo.find_missed(now, window),
            attempts=self.store_attempts,
            description="find missed reminders",
        )
        if not missed:
            return 0

        logger.info(f"Recovery: {len(missed)} reminders missed their due window")

        updated = 0
        for reminder in missed:
            try:
                if await self._roll_forward(reminder, now, window):
                    updated += 1
            except ScheduleValidationError as e:
                logger.warning(f"Invalid schedule for reminder {reminder.id}, skipping: {e}")
            except Exception as e:
                logger.error(f"Error recovering reminder {reminder.id}: {e}", exc_info=True)

        return updated

    async def _process(self, reminder: Reminder, now: datetime, window: timedelta) -> bool:
        """Fire one reminder. Returns True if this pass fanned it out."""
        try:
            validate_schedule(reminder.frequency, reminder.custom_schedule)
        except ScheduleValidationError as e:
            logger.warning(f"Invalid schedule for reminder {reminder.id}, skipping: {e}")
            return False

        if reminder.is_snoozed:
            await self.repo.clear_snooze(reminder.id, now)
            logger.info(f"Snooze expired for reminder {reminder.id}")

        half = window / 2
        already_fired = (
            reminder.last_triggered_at is not None
            and reminder.last_triggered_at >= reminder.target - half
        )

        fanned_out = False
        if already_fired:
            logger.debug(f"Reminder {reminder.id} already fired for this occurrence")
        else:
            previous = reminder.last_triggered_at
            if not await self.repo.claim_reminder(reminder.id, previous, now):
                logger.info(f"Reminder {reminder.id} claimed by another worker")
                return False

            try:
                await self.dispatcher.fan_out(reminder, now=now)
            except Exception:
                await self.repo.release_claim(reminder.id, now, previous)
                raise

            reminder.last_triggered_at = now
            reminder.trigger_count += 1
            fanned_out = True
            logger.info(f"Triggered reminder {reminder.id} (count: {reminder.trigger_count})")

        if not reminder.is_recurring:
            await self.repo.deactivate_reminder(reminder.id)
            return fanned_out

        await self._reschedule(reminder, reminder.last_triggered_at or now, window)
        return fanned_out

    def _predicate(self, reminder: Reminder) -> Predicate | None:
        """Predicate registered under the schedule's "condition" name."""
        return self.predicates.get(reminder.custom_schedule.get("condition", ""))

    async def _reschedule(
        self, reminder: Reminder, reference: datetime, window: timedelta
    ) -> datetime | None:
        """Persist the next occurrence after reference, or deactivate.

        A reminder can fire up to window/2 before its target, so an occurrence
        computed from the trigger time may be the target that just fired. Those
        are skipped by recomputing from the end of the fired window.
        """
        window_end = reminder.target + window / 2
        try:
            upcoming = next_occurrence(
                reminder.frequency,
                reminder.custom_schedule,
                reference,
                predicate=self._predicate(reminder),
            )
            if upcoming is not None and upcoming <= window_end:
                upcoming = next_occurrence(
                    reminder.frequency,
                    reminder.custom_schedule,
                    window_end,
                    predicate=self._predicate(reminder),
                )
        except ScheduleValidationError as e:
            logger.warning(f"Invalid schedule for reminder {reminder.id}, not rescheduling: {e}")
            return None

        if upcoming is None or (reminder.ends_at is not None and upcoming > reminder.ends_at):
            await self.repo.deactivate_reminder(reminder.id)
            logger.info(f"Reminder {reminder.id} has no further occurrences, deactivated")
            return None

        await self.repo.schedule_next(reminder.id, upcoming)
        logger.info(f"Reminder {reminder.id} next occurs at {upcoming.isoformat()}")
        return upcoming

    async def _roll_forward(self, reminder: Reminder, now: datetime, window: timedelta) -> bool:
        if not reminder.is_recurring:
            await self.repo.deactivate_reminder(reminder.id)
            logger.info(f"One-time reminder {reminder.id} missed its window, deactivated")
            return True

        cutoff = now - window / 2
        target = reminder.target
        upcoming: datetime | None = target
        # Bounded walk in case a schedule never gets past the cutoff
        for _ in range(1000):
            upcoming = next_occurrence(
                reminder.frequency,
                reminder.custom_schedule,
                upcoming,
                predicate=self._predicate(reminder),
            )
            if upcoming is None or upcoming >= cutoff:
                break
        else:
            # Jump straight past the cutoff and resume from there
            upcoming = next_occurrence(
                reminder.frequency,
                reminder.custom_schedule,
                cutoff,
                predicate=self._predicate(reminder),
            )

        if upcoming is None or (reminder.ends_at is not None and upcoming > reminder.ends_at):
            await self.repo.deactivate_reminder(reminder.id)
            logger.info(f"Reminder {reminder.id} has no further occurrences, deactivated")
            return True

        await self.repo.schedule_next(reminder.id, upcoming)
        logger.info(
            f"Reminder {reminder.id} missed {target.isoformat()}, next occurs at {upcoming.isoformat()}"
        )
        return True
