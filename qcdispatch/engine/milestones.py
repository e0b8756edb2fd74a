"""Milestone detection - declarative threshold rules over couple metrics.

Rules come from a RuleBook (see ``utils.constants.DEFAULT_RULE_BOOK``) and
are evaluated by one generic comparator in declared order: single-metric
rules per category, then combination rules, then the velocity rule, which
reads back the milestones committed earlier in the same run.

Each milestone is created through the store's insert-if-absent against
UNIQUE(couple_id, milestone_key). A rejected insert means the couple already
has it; repeated or concurrent runs never produce duplicates.
"""

import asyncio
import json
import logging
import operator
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from qcdispatch.channels.formatters import format_milestone_body
from qcdispatch.channels.realtime import couple_milestone_stream
from qcdispatch.db.models import MetricSnapshot, Milestone
from qcdispatch.db.repository import Repository
from qcdispatch.engine.dispatcher import NotificationDispatcher
from qcdispatch.utils.constants import (
    DEFAULT_RULE_BOOK,
    RECENT_MILESTONE_METRIC,
    SLOW_DETECTION_THRESHOLD,
    CombinationRule,
    Condition,
    DetectionRule,
    RuleBook,
    VelocityRule,
)
from qcdispatch.utils.errors import with_store_retry
from qcdispatch.utils.time_utils import to_storage, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPERATORS = {
    ">=": operator.ge,
    ">": operator.gt,
    "==": operator.eq,
}

# Trailing window counted into recent_milestone_count
RECENT_MILESTONE_WINDOW = timedelta(days=30)

SPECIAL_CATEGORY = "special"


class Broadcaster(Protocol):
    async def broadcast(self, stream: str, payload: dict[str, Any]) -> None: ...


def metric_matches(value: Any, threshold: Any, op: str = ">=") -> bool:
    """Compare a metric value against a rule threshold.

    A threshold of None means the metric only has to be truthy. Values that
    cannot be compared (e.g. a string against a number) never match.
    """
    if threshold is None:
        return bool(value)
    try:
        return bool(OPERATORS[op](value, threshold))
    except TypeError:
        return False


def _rule_record(rule: DetectionRule | CombinationRule | VelocityRule) -> dict[str, Any]:
    record: dict[str, Any] = {"key": rule.key, "title": rule.title}
    if isinstance(rule, DetectionRule):
        record.update(metric=rule.metric, threshold=rule.threshold, op=rule.op)
    elif isinstance(rule, CombinationRule):
        record["conditions"] = [
            {"metric": c.metric, "threshold": c.threshold, "op": c.op} for c in rule.conditions
        ]
    else:
        record.update(window_days=rule.window_days, rate_per_day=rule.rate_per_day)
    return record


def load_rule_book(path: Path | str) -> RuleBook:
    """Load a rule book from a JSON file.

    Format::

        {
          "categories": {"frequency": [{"key": "checkin_10", "title": "...",
                                        "description": "...", "metric": "total_checkins",
                                        "threshold": 10, "op": ">="}]},
          "combinations": [{"key": "...", "title": "...", "description": "...",
                            "conditions": [{"metric": "...", "threshold": 30}]}],
          "velocity": {"key": "...", "title": "...", "description": "...",
                       "window_days": 30, "rate_per_day": 0.5}
        }

    Raises:
        ValueError: if the file is not a valid rule book
    """
    with open(path) as f:
        raw = json.load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("categories"), dict):
        raise ValueError(f"Rule book {path} needs a 'categories' mapping")

    try:
        categories = {
            category: [_detection_rule(item) for item in rules]
            for category, rules in raw["categories"].items()
        }
        combinations = [
            CombinationRule(
                key=item["key"],
                title=item["title"],
                description=item["description"],
                conditions=tuple(
                    Condition(c["metric"], c["threshold"], _op(c.get("op", ">=")))
                    for c in item["conditions"]
                ),
            )
            for item in raw.get("combinations", [])
        ]
        velocity = VelocityRule(**raw["velocity"]) if raw.get("velocity") else None
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed rule in {path}: {e}") from e

    logger.info(
        f"Loaded rule book from {path}: {sum(len(r) for r in categories.values())} rules "
        f"in {len(categories)} categories"
    )
    return RuleBook(categories=categories, combinations=combinations, velocity=velocity)


def _op(value: str) -> str:
    if value not in OPERATORS:
        raise ValueError(f"Unknown comparison operator: {value!r}")
    return value


def _detection_rule(item: dict[str, Any]) -> DetectionRule:
    return DetectionRule(
        key=item["key"],
        title=item["title"],
        description=item["description"],
        metric=item["metric"],
        threshold=item.get("threshold"),
        op=_op(item.get("op", ">=")),
    )


class MilestoneDetector:
    """Evaluates rule books against metrics and records new milestones once."""

    def __init__(
        self,
        repo: Repository,
        dispatcher: NotificationDispatcher,
        broadcaster: Broadcaster,
        rule_book: RuleBook = DEFAULT_RULE_BOOK,
        concurrency: int = 4,
        store_attempts: int = 5,
    ):
        self.repo = repo
        self.dispatcher = dispatcher
        self.broadcaster = broadcaster
        self.rule_book = rule_book
        self.concurrency = concurrency
        self.store_attempts = store_attempts

    async def detect(
        self,
        couple_id: int,
        metrics: dict[str, Any],
        rule_book: RuleBook | None = None,
        now: datetime | None = None,
    ) -> list[int]:
        """Evaluate every rule for one couple.

        Returns:
            IDs of milestones created by this call
        """
        rule_book = rule_book or self.rule_book
        now = now or utcnow()
        created = []

        for category, rules in rule_book.categories.items():
            for rule in rules:
                value = metrics.get(rule.metric)
                if value is None or not metric_matches(value, rule.threshold, rule.op):
                    continue

                milestone_id = await self._create(
                    couple_id, category, rule, now, {rule.metric: value}
                )
                if milestone_id is not None:
                    created.append(milestone_id)

        if rule_book.combinations:
            recent = await self._store(
                f"count recent milestones for couple {couple_id}",
                lambda: self.repo.count_milestones_since(couple_id, now - RECENT_MILESTONE_WINDOW),
            )
            combined = {**metrics, RECENT_MILESTONE_METRIC: recent}

            for combination in rule_book.combinations:
                values = {c.metric: combined.get(c.metric) for c in combination.conditions}
                if not all(
                    values[c.metric] is not None
                    and metric_matches(values[c.metric], c.threshold, c.op)
                    for c in combination.conditions
                ):
                    continue

                milestone_id = await self._create(
                    couple_id, SPECIAL_CATEGORY, combination, now, values
                )
                if milestone_id is not None:
                    created.append(milestone_id)

        if rule_book.velocity is not None:
            milestone_id = await self._check_velocity(couple_id, rule_book.velocity, now)
            if milestone_id is not None:
                created.append(milestone_id)

        if created:
            logger.info(f"Couple {couple_id}: {len(created)} new milestones")

        return created

    async def detect_batch(
        self,
        snapshots: list[MetricSnapshot] | None = None,
        rule_book: RuleBook | None = None,
        now: datetime | None = None,
    ) -> dict[int, list[int]]:
        """Run detection for many couples with bounded concurrency.

        A failure for one couple is logged and does not stop the others.

        Returns:
            Mapping of couple id to the milestone ids created for it
        """
        started = time.monotonic()

        if snapshots is None:
            snapshots = await self._store(
                "list metric snapshots", self.repo.list_metric_snapshots
            )

        semaphore = asyncio.Semaphore(max(self.concurrency, 1))
        results: dict[int, list[int]] = {}

        async def run(snapshot: MetricSnapshot) -> None:
            async with semaphore:
                try:
                    results[snapshot.couple_id] = await self.detect(
                        snapshot.couple_id, snapshot.metrics, rule_book, now
                    )
                except Exception as e:
                    logger.error(
                        f"Failed to detect milestones for couple {snapshot.couple_id}: {e}",
                        exc_info=True,
                    )

        await asyncio.gather(*(run(snapshot) for snapshot in snapshots))

        elapsed = time.monotonic() - started
        total = sum(len(ids) for ids in results.values())
        logger.info(
            f"Milestone detection completed in {elapsed:.2f}s for {len(snapshots)} couples, "
            f"detected {total} new milestones"
        )
        if elapsed > SLOW_DETECTION_THRESHOLD.total_seconds():
            logger.warning(f"Slow milestone detection: {elapsed:.2f}s")

        return results

    async def _check_velocity(
        self, couple_id: int, rule: VelocityRule, now: datetime
    ) -> int | None:
        count = await self._store(
            f"count milestones for couple {couple_id}",
            lambda: self.repo.count_milestones_since(couple_id, now - timedelta(days=rule.window_days)),
        )
        rate = count / rule.window_days
        if rate <= rule.rate_per_day:
            return None
        return await self._create(
            couple_id, SPECIAL_CATEGORY, rule, now, {"milestones": count, "rate_per_day": rate}
        )

    async def _create(
        self,
        couple_id: int,
        category: str,
        rule: DetectionRule | CombinationRule | VelocityRule,
        now: datetime,
        matched: dict[str, Any],
    ) -> int | None:
        """Insert the milestone if absent, then announce it."""
        milestone = Milestone(
            couple_id=couple_id,
            category=category,
            milestone_key=rule.key,
            title=rule.title,
            description=rule.description,
            achieved_at=now,
            metadata={"rule_matched": _rule_record(rule), "values": matched},
        )
        milestone_id = await self._store(
            f"create milestone {rule.key} for couple {couple_id}",
            lambda: self.repo.create_milestone_if_absent(milestone),
        )
        if milestone_id is None:
            return None

        logger.info(f"Created milestone '{rule.title}' ({rule.key}) for couple {couple_id}")

        try:
            await self._announce(milestone)
        except Exception as e:
            logger.error(f"Failed to announce milestone {milestone_id}: {e}", exc_info=True)

        return milestone_id

    async def _announce(self, milestone: Milestone) -> None:
        """Notify both members and broadcast the achievement."""
        await self.dispatcher.notify_couple(
            milestone.couple_id,
            "milestone_achieved",
            title="Milestone achieved!",
            body=format_milestone_body(milestone),
            occurrence_key=f"milestone:{milestone.id}",
            data={
                "milestone_id": milestone.id,
                "milestone_key": milestone.milestone_key,
                "category": milestone.category,
                "action_url": "/growth",
            },
        )
        await self.broadcaster.broadcast(
            couple_milestone_stream(milestone.couple_id),
            {
                "event": "milestone_achieved",
                "milestone": {
                    "id": milestone.id,
                    "key": milestone.milestone_key,
                    "title": milestone.title,
                    "description": milestone.description,
                    "category": milestone.category,
                    "achieved_at": to_storage(milestone.achieved_at),
                },
            },
        )

    async def _store(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_store_retry(
            operation, attempts=self.store_attempts, description=description
        )
