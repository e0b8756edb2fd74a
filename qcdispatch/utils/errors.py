"""Error taxonomy and the store retry wrapper."""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DispatchError(Exception):
    """Base class for pipeline errors."""


class NotFoundTransient(DispatchError):
    """A reminder, notification or couple vanished before a deferred action ran."""


class StoreTransientError(DispatchError):
    """The store is temporarily unavailable (locked, busy, timed out)."""


class ScheduleValidationError(DispatchError, ValueError):
    """A reminder's recurrence descriptor is malformed."""


class DeliveryChannelError(DispatchError):
    """A delivery channel rejected or failed to send a notification."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class ExhaustedRetries(DispatchError):
    """A notification used up its delivery retries."""


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 5,
    base_delay: timedelta = timedelta(seconds=1),
    description: str = "store operation",
) -> T:
    """Run an async store operation, retrying transient failures.

    Backs off exponentially (1s, 2s, 4s, ...) between attempts and re-raises
    the last StoreTransientError once the attempts are used up. Any other
    exception propagates immediately.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    delay = base_delay.total_seconds()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except StoreTransientError as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            delay *= 2
