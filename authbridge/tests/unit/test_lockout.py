from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from authbridge.core.clock import as_utc, utc_now
from authbridge.core.errors import LockoutError
from authbridge.domain.models import AccountLockout, FailedLoginAttempt
from authbridge.persistence.db import SessionLocal
from authbridge.services.auth.lockout import (
    check_lockout,
    clear_failed_attempts,
    lockout_duration,
    record_failed_login,
)


def test_lockout_duration_doubles_and_caps() -> None:
    assert lockout_duration(1) == timedelta(minutes=30)
    assert lockout_duration(2) == timedelta(minutes=60)
    assert lockout_duration(3) == timedelta(minutes=120)
    assert lockout_duration(20) == timedelta(minutes=1440)


async def _fail(times: int, identifier: str = "bob@example.com") -> AccountLockout:
    async with SessionLocal() as session:
        lockout = None
        for _ in range(times):
            lockout = await record_failed_login(
                session, identifier=identifier, ip_address="10.0.0.1", reason="invalid_credentials"
            )
        assert lockout is not None
        return lockout


async def _load(identifier: str = "bob@example.com") -> AccountLockout:
    async with SessionLocal() as session:
        row = (
            await session.execute(select(AccountLockout).where(AccountLockout.identifier == identifier))
        ).scalar_one()
        return row


async def _expire_lock(identifier: str = "bob@example.com") -> None:
    async with SessionLocal() as session:
        row = (
            await session.execute(select(AccountLockout).where(AccountLockout.identifier == identifier))
        ).scalar_one()
        row.locked_until = utc_now() - timedelta(seconds=1)
        await session.commit()


@pytest.mark.asyncio
async def test_threshold_locks_account() -> None:
    # Four failures leave the account open; the fifth locks it.
    await _fail(4)
    async with SessionLocal() as session:
        await check_lockout(session, "bob@example.com")

    await _fail(1)
    async with SessionLocal() as session:
        with pytest.raises(LockoutError) as exc_info:
            await check_lockout(session, "BOB@example.com")
        attempts = (await session.execute(select(func.count(FailedLoginAttempt.id)))).scalar_one()
    error = exc_info.value
    assert error.status_code == 423
    assert error.locked_until > utc_now()
    assert 0 < error.retry_after_s <= 30 * 60
    assert "locked_until" in error.details
    assert attempts == 5


@pytest.mark.asyncio
async def test_each_lockout_episode_is_longer() -> None:
    await _fail(5)
    first = await _load()
    assert first.lock_count == 1
    first_length = as_utc(first.locked_until) - as_utc(first.last_failed_at)

    await _expire_lock()
    async with SessionLocal() as session:
        # An elapsed lock allows a fresh attempt cycle.
        await check_lockout(session, "bob@example.com")

    await _fail(5)
    second = await _load()
    assert second.lock_count == 2
    second_length = as_utc(second.locked_until) - as_utc(second.last_failed_at)
    assert second_length > first_length


@pytest.mark.asyncio
async def test_success_clears_counter_but_keeps_history() -> None:
    await _fail(5)
    await _expire_lock()
    await _fail(2)
    async with SessionLocal() as session:
        await clear_failed_attempts(session, "bob@example.com")
        await session.commit()
    row = await _load()
    assert row.failed_count == 0
    assert row.locked_until is None
    assert row.lock_count == 1


@pytest.mark.asyncio
async def test_stale_failures_outside_window_do_not_accumulate() -> None:
    await _fail(4)
    async with SessionLocal() as session:
        row = (
            await session.execute(select(AccountLockout).where(AccountLockout.identifier == "bob@example.com"))
        ).scalar_one()
        row.last_failed_at = utc_now() - timedelta(hours=1)
        await session.commit()
    lockout = await _fail(1)
    assert lockout.failed_count == 1
    assert lockout.locked_until is None


@pytest.mark.asyncio
async def test_identities_are_locked_independently() -> None:
    await _fail(5, "bob@example.com")
    async with SessionLocal() as session:
        await check_lockout(session, "alice@example.com")
