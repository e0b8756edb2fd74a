"""Shared fixtures: a real SQLite store plus in-memory channels and deferrer."""

from datetime import timedelta
from types import SimpleNamespace
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from qcdispatch.channels.alerts import AdminAlertSink
from qcdispatch.channels.gateway import DeliveryChannel, DeliveryChannelGateway
from qcdispatch.channels.realtime import OutboxRealtimeChannel
from qcdispatch.db.migrations import run_migrations
from qcdispatch.db.models import Notification, User
from qcdispatch.db.repository import Repository
from qcdispatch.engine.dispatcher import NotificationDispatcher
from qcdispatch.engine.milestones import MilestoneDetector
from qcdispatch.engine.retry import RetryCoordinator
from qcdispatch.engine.scheduler import ReminderScheduler
from qcdispatch.utils.errors import DeliveryChannelError

COUPLE_ID = 1


class FakeChannel(DeliveryChannel):
    """Records sends; can be told to fail for a user."""

    def __init__(self, name: str):
        self.name = name
        self.sent: list[int] = []
        self.attempts: list[int] = []
        self._failures: dict[int, int] = {}

    def fail_for(self, user_id: int, times: int = -1) -> None:
        """Fail the next `times` sends to user_id (-1 = every send)."""
        self._failures[user_id] = times

    async def send(self, notification: Notification, user: User | None) -> None:
        self.attempts.append(notification.id)
        remaining = self._failures.get(notification.user_id, 0)
        if remaining:
            if remaining > 0:
                self._failures[notification.user_id] = remaining - 1
            raise DeliveryChannelError(self.name, "simulated outage")
        self.sent.append(notification.id)


class FakeDeferrer:
    """Collects deferred calls so tests can run them one at a time."""

    def __init__(self):
        self.jobs: list[tuple[timedelta, Any, tuple]] = []
        self.delays: list[timedelta] = []

    def schedule(self, delay: timedelta, func, *args: Any, name: str | None = None) -> None:
        self.jobs.append((delay, func, args))
        self.delays.append(delay)

    async def run_next(self) -> timedelta:
        delay, func, args = self.jobs.pop(0)
        await func(*args)
        return delay

    async def run_all(self, limit: int = 50) -> None:
        for _ in range(limit):
            if not self.jobs:
                return
            await self.run_next()


class RecordingAlertSink(AdminAlertSink):
    def __init__(self):
        self.alerts: list[tuple[Notification, str]] = []

    async def alert(self, notification: Notification, reason: str) -> None:
        self.alerts.append((notification, reason))


@pytest_asyncio.fixture
async def repo(tmp_path) -> AsyncGenerator[Repository, None]:
    """Repository on a fresh SQLite file."""
    db_path = tmp_path / "test.db"
    await run_migrations(db_path)
    repository = Repository(db_path)
    await repository.connect()
    yield repository
    await repository.close()


@pytest_asyncio.fixture
async def couple(repo: Repository) -> tuple[User, User]:
    """Two partners: A has a push token, B does not."""
    a = await repo.create_user(User(couple_id=COUPLE_ID, email="a@example.com", telegram_chat_id=111))
    b = await repo.create_user(User(couple_id=COUPLE_ID, email="b@example.com"))
    return a, b


@pytest.fixture
def pipeline(repo: Repository) -> SimpleNamespace:
    """The full pipeline wired to fakes."""
    realtime = FakeChannel("realtime")
    push = FakeChannel("push")
    email = FakeChannel("email")
    gateway = DeliveryChannelGateway([realtime, push, email])
    deferrer = FakeDeferrer()
    alerts = RecordingAlertSink()

    retry = RetryCoordinator(repo, gateway, deferrer, alerts, store_attempts=1)
    dispatcher = NotificationDispatcher(repo, gateway, retry, deferrer, store_attempts=1)
    scheduler = ReminderScheduler(repo, dispatcher, store_attempts=1)
    detector = MilestoneDetector(repo, dispatcher, OutboxRealtimeChannel(repo), store_attempts=1)

    return SimpleNamespace(
        repo=repo,
        realtime=realtime,
        push=push,
        email=email,
        gateway=gateway,
        deferrer=deferrer,
        alerts=alerts,
        retry=retry,
        dispatcher=dispatcher,
        scheduler=scheduler,
        detector=detector,
    )
