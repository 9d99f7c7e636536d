from __future__ import annotations

from datetime import timedelta
import logging
import math

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import as_utc, utc_now
from authbridge.core.config import get_settings
from authbridge.core.errors import DatabaseError, LockoutError
from authbridge.domain.models import AccountLockout, FailedLoginAttempt
from authbridge.persistence.repos.users import normalize_email


logger = logging.getLogger(__name__)


def lockout_duration(lock_count: int) -> timedelta:
    # Episode n locks for base * 2^(n-1) minutes, capped at the configured maximum.
    settings = get_settings()
    exponent = max(0, lock_count - 1)
    minutes = min(settings.lockout_base_minutes * (2**exponent), settings.lockout_max_minutes)
    return timedelta(minutes=minutes)


async def _get_lockout(
    session: AsyncSession, identifier: str, *, for_update: bool = False
) -> AccountLockout | None:
    query = select(AccountLockout).where(AccountLockout.identifier == identifier)
    if for_update:
        # Serialize counter increments for the same identity across requests.
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def check_lockout(session: AsyncSession, identifier: str) -> None:
    """Raise LockoutError while the identity is inside a lockout period.

    Every credential is rejected while locked, correct or not. Once
    ``locked_until`` passes the identity gets a fresh attempt cycle.
    """
    lockout = await _get_lockout(session, normalize_email(identifier))
    if lockout is None or lockout.locked_until is None:
        return
    locked_until = as_utc(lockout.locked_until)
    now = utc_now()
    if locked_until > now:
        retry_after_s = max(1, int(math.ceil((locked_until - now).total_seconds())))
        raise LockoutError(locked_until=locked_until, retry_after_s=retry_after_s)


async def _load_or_create(session: AsyncSession, identifier: str) -> AccountLockout:
    lockout = await _get_lockout(session, identifier, for_update=True)
    if lockout is not None:
        return lockout
    try:
        lockout = AccountLockout(identifier=identifier, failed_count=0, lock_count=0)
        session.add(lockout)
        await session.flush()
        return lockout
    except IntegrityError:
        # Another request created the row first; rollback and reload it locked.
        await session.rollback()
    lockout = await _get_lockout(session, identifier, for_update=True)
    if lockout is None:
        raise DatabaseError("lockout insert failed unexpectedly")
    return lockout


async def record_failed_login(
    session: AsyncSession,
    *,
    identifier: str,
    ip_address: str | None = None,
    reason: str | None = None,
) -> AccountLockout:
    """Count a failed login and lock the identity when the threshold is reached.

    Commits on return so the counter survives the caller's error response.
    """
    settings = get_settings()
    key = normalize_email(identifier)
    now = utc_now()
    lockout = await _load_or_create(session, key)

    locked_until = as_utc(lockout.locked_until)
    if locked_until is not None and locked_until <= now:
        # The previous episode elapsed; start a new cycle but keep lock_count.
        lockout.locked_until = None
        lockout.failed_count = 0
    last_failed = as_utc(lockout.last_failed_at)
    window = timedelta(minutes=settings.lockout_window_minutes)
    if last_failed is not None and now - last_failed > window:
        lockout.failed_count = 0

    lockout.failed_count = (lockout.failed_count or 0) + 1
    lockout.last_failed_at = now
    session.add(FailedLoginAttempt(identifier=key, ip_address=ip_address, reason=reason, attempted_at=now))

    if lockout.failed_count >= settings.lockout_max_attempts:
        lockout.lock_count = (lockout.lock_count or 0) + 1
        lockout.locked_until = now + lockout_duration(lockout.lock_count)
        lockout.failed_count = 0
        logger.warning(
            "account_locked identifier=%s lock_count=%s locked_until=%s",
            key,
            lockout.lock_count,
            lockout.locked_until.isoformat(),
        )
    await session.commit()
    return lockout


async def clear_failed_attempts(session: AsyncSession, identifier: str) -> None:
    # Success resets the counter; lock_count stays for escalation.
    lockout = await _get_lockout(session, normalize_email(identifier), for_update=True)
    if lockout is None:
        return
    lockout.failed_count = 0
    lockout.last_failed_at = None
    lockout.locked_until = None
