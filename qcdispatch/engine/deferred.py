"""Deferred execution on the python-telegram-bot JobQueue."""

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable

from telegram.ext import ContextTypes, JobQueue

logger = logging.getLogger(__name__)

DeferredCall = Callable[..., Awaitable[Any]]


class JobQueueDeferrer:
    """Runs a coroutine function once after a delay, without blocking the caller."""

    def __init__(self, job_queue: JobQueue):
        self.job_queue = job_queue

    def schedule(
        self, delay: timedelta, func: DeferredCall, *args: Any, name: str | None = None
    ) -> None:
        """Schedule func(*args) to run after delay."""

        async def _run(context: ContextTypes.DEFAULT_TYPE) -> None:
            await func(*args)

        self.job_queue.run_once(_run, when=delay, name=name)
        logger.debug(f"Deferred {name or func.__name__} by {delay.total_seconds():.0f}s")
