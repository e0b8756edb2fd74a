"""Tests for the store retry wrapper and transient error mapping."""

from datetime import timedelta

import aiosqlite
import pytest

from qcdispatch.utils.errors import StoreTransientError, with_store_retry

NO_WAIT = timedelta(0)


@pytest.mark.asyncio
async def test_with_store_retry_recovers():
    """Transient failures are retried until the operation succeeds."""
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise StoreTransientError("database is locked")
        return "ok"

    assert await with_store_retry(flaky, attempts=5, base_delay=NO_WAIT) == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_with_store_retry_gives_up():
    """The last transient error is re-raised once attempts run out."""
    calls = 0

    async def down():
        nonlocal calls
        calls += 1
        raise StoreTransientError("database is locked")

    with pytest.raises(StoreTransientError):
        await with_store_retry(down, attempts=3, base_delay=NO_WAIT)
    assert calls == 3


@pytest.mark.asyncio
async def test_with_store_retry_propagates_other_errors():
    """Non-transient errors are not retried."""
    calls = 0

    async def broken():
        nonlocal calls
        calls += 1
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await with_store_retry(broken, base_delay=NO_WAIT)
    assert calls == 1

    with pytest.raises(ValueError):
        await with_store_retry(broken, attempts=0)


@pytest.mark.asyncio
async def test_repository_maps_lock_errors(repo):
    """Lock and busy errors from SQLite surface as StoreTransientError."""
    with pytest.raises(StoreTransientError):
        async with repo._guard("find_due"):
            raise aiosqlite.OperationalError("database is locked")

    with pytest.raises(aiosqlite.OperationalError):
        async with repo._guard("find_due"):
            raise aiosqlite.OperationalError("no such table: reminders")
