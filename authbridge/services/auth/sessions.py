from __future__ import annotations

from datetime import datetime, timedelta
import hashlib
import json
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, distinct, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import as_utc, utc_now
from authbridge.core.config import get_settings
from authbridge.core.errors import AuthenticationError, DatabaseError, NotFoundError
from authbridge.domain.models import RefreshToken, UserDevice, UserSession


logger = logging.getLogger(__name__)

END_LOGOUT = "logout"
END_FORCE_LOGOUT = "force_logout"
END_EXPIRED = "expired"
END_IDLE = "idle_timeout"
END_PASSWORD_RESET = "password_reset"
END_TOKEN_THEFT = "token_theft"


def compute_device_hash(
    *, user_agent: str | None, ip_address: str | None, device_info: dict[str, Any] | None
) -> str:
    # Canonical JSON keeps the hash stable regardless of key order.
    canonical = json.dumps(device_info or {}, sort_keys=True, separators=(",", ":"))
    raw = f"{user_agent or ''}-{ip_address or ''}-{canonical}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _describe_device(device_info: dict[str, Any] | None, user_agent: str | None) -> tuple[str | None, str | None]:
    # Prefer client-declared names; fall back to a coarse user-agent guess.
    info = device_info or {}
    name = info.get("deviceName") or info.get("device_name") or info.get("model")
    device_type = info.get("deviceType") or info.get("device_type") or info.get("platform")
    if device_type is None and user_agent:
        lowered = user_agent.lower()
        if "mobile" in lowered or "android" in lowered or "iphone" in lowered:
            device_type = "mobile"
        else:
            device_type = "desktop"
    return (str(name) if name else None, str(device_type) if device_type else None)


async def _get_device(session: AsyncSession, *, user_id: int, device_hash: str) -> UserDevice | None:
    result = await session.execute(
        select(UserDevice).where(UserDevice.user_id == user_id, UserDevice.device_hash == device_hash)
    )
    return result.scalar_one_or_none()


async def register_device(
    session: AsyncSession,
    *,
    user_id: int,
    user_agent: str | None,
    ip_address: str | None,
    device_info: dict[str, Any] | None,
) -> tuple[UserDevice, bool]:
    """Record the device behind a login, returning it and whether it was unseen before.

    A device is only reported as new when the user already had other devices,
    so a first-ever login is not flagged.
    """
    device_hash = compute_device_hash(user_agent=user_agent, ip_address=ip_address, device_info=device_info)
    now = utc_now()
    device = await _get_device(session, user_id=user_id, device_hash=device_hash)
    if device is not None:
        device.last_seen_at = now
        device.ip_address = ip_address
        return device, False

    prior = (
        await session.execute(select(func.count(UserDevice.id)).where(UserDevice.user_id == user_id))
    ).scalar_one()
    name, device_type = _describe_device(device_info, user_agent)
    try:
        device = UserDevice(
            user_id=user_id,
            device_hash=device_hash,
            device_name=name,
            device_type=device_type,
            user_agent=user_agent,
            ip_address=ip_address,
            is_trusted=False,
            first_seen_at=now,
            last_seen_at=now,
        )
        session.add(device)
        await session.flush()
        return device, int(prior or 0) > 0
    except IntegrityError:
        # Concurrent login from the same device; rollback and reload.
        await session.rollback()
    device = await _get_device(session, user_id=user_id, device_hash=device_hash)
    if device is None:
        raise DatabaseError("device insert failed unexpectedly")
    return device, False


async def trust_device(session: AsyncSession, *, user_id: int, device_hash: str) -> UserDevice:
    # Promote a known device to trusted; unknown devices cannot be trusted blindly.
    device = await _get_device(session, user_id=user_id, device_hash=device_hash)
    if device is None:
        raise NotFoundError("Device not found", details={"device_hash": device_hash})
    if not device.is_trusted:
        device.is_trusted = True
        device.trusted_at = utc_now()
    await session.commit()
    return device


async def list_devices(session: AsyncSession, user_id: int) -> list[UserDevice]:
    result = await session.execute(
        select(UserDevice).where(UserDevice.user_id == user_id).order_by(UserDevice.last_seen_at.desc())
    )
    return list(result.scalars().all())


def session_expiry(remember_me: bool) -> datetime:
    settings = get_settings()
    if remember_me:
        return utc_now() + timedelta(days=settings.session_remember_me_days)
    return utc_now() + timedelta(hours=settings.session_ttl_hours)


async def create_session(
    session: AsyncSession,
    *,
    user_id: int,
    device_hash: str | None,
    ip_address: str | None,
    user_agent: str | None,
    device_info: dict[str, Any] | None,
    auth_provider: str | None,
    remember_me: bool = False,
) -> UserSession:
    # Stage the login instance; tokens issued with it carry its session_id.
    now = utc_now()
    record = UserSession(
        session_id=f"sess_{uuid4().hex}",
        user_id=user_id,
        device_hash=device_hash,
        ip_address=ip_address,
        user_agent=user_agent,
        device_info=device_info,
        auth_provider=auth_provider,
        remember_me=remember_me,
        is_active=True,
        created_at=now,
        last_accessed_at=now,
        expires_at=session_expiry(remember_me),
    )
    session.add(record)
    await session.flush()
    return record


async def get_session_record(session: AsyncSession, session_id: str) -> UserSession | None:
    result = await session.execute(select(UserSession).where(UserSession.session_id == session_id))
    return result.scalar_one_or_none()


def _end(record: UserSession, reason: str) -> None:
    record.is_active = False
    record.ended_at = utc_now()
    record.end_reason = reason


async def touch_session(session: AsyncSession, session_id: str) -> UserSession:
    """Validate a session on use and slide its idle clock.

    Expired or idle sessions are ended and committed before the 401 is raised
    so the state change survives the error response.
    """
    settings = get_settings()
    record = await get_session_record(session, session_id)
    if record is None or not record.is_active:
        raise AuthenticationError("Session is no longer active")
    now = utc_now()
    if as_utc(record.expires_at) <= now:
        _end(record, END_EXPIRED)
        await session.commit()
        raise AuthenticationError("Session expired")
    idle_limit = timedelta(minutes=settings.session_idle_timeout_minutes)
    # Remember-me sessions are bounded by their absolute expiry only.
    if not record.remember_me and now - as_utc(record.last_accessed_at) > idle_limit:
        _end(record, END_IDLE)
        await session.commit()
        logger.info("session_idle_timeout session_id=%s user_id=%s", session_id, record.user_id)
        raise AuthenticationError("Session expired due to inactivity")
    record.last_accessed_at = now
    return record


async def get_active_sessions(
    session: AsyncSession, *, user_id: int, exclude_session_id: str | None = None
) -> list[UserSession]:
    query = select(UserSession).where(
        UserSession.user_id == user_id,
        UserSession.is_active.is_(True),
        UserSession.expires_at > utc_now(),
    )
    if exclude_session_id:
        query = query.where(UserSession.session_id != exclude_session_id)
    result = await session.execute(query.order_by(UserSession.last_accessed_at.desc()))
    return list(result.scalars().all())


async def invalidate_session(
    session: AsyncSession, *, user_id: int, session_id: str, reason: str = END_LOGOUT
) -> bool:
    # End one session and revoke the refresh tokens bound to it.
    now = utc_now()
    result = await session.execute(
        update(UserSession)
        .where(
            UserSession.session_id == session_id,
            UserSession.user_id == user_id,
            UserSession.is_active.is_(True),
        )
        .values(is_active=False, ended_at=now, end_reason=reason)
    )
    await session.execute(
        update(RefreshToken)
        .where(RefreshToken.session_id == session_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now, revoked_reason=reason)
    )
    await session.commit()
    return bool(result.rowcount)


async def end_user_sessions(
    session: AsyncSession,
    *,
    user_id: int,
    reason: str,
    exclude_session_id: str | None = None,
) -> int:
    # Stage bulk session termination without committing.
    query = update(UserSession).where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
    if exclude_session_id:
        query = query.where(UserSession.session_id != exclude_session_id)
    result = await session.execute(
        query.values(is_active=False, ended_at=utc_now(), end_reason=reason)
    )
    return int(result.rowcount or 0)


async def invalidate_all_sessions(
    session: AsyncSession,
    *,
    user_id: int,
    reason: str = END_FORCE_LOGOUT,
    exclude_session_id: str | None = None,
) -> int:
    """End every active session of a user, optionally sparing one, and revoke their tokens."""
    ended = await end_user_sessions(
        session, user_id=user_id, reason=reason, exclude_session_id=exclude_session_id
    )
    token_filter = [RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None)]
    if exclude_session_id:
        token_filter.append(
            or_(RefreshToken.session_id.is_(None), RefreshToken.session_id != exclude_session_id)
        )
    await session.execute(
        update(RefreshToken).where(*token_filter).values(revoked_at=utc_now(), revoked_reason=reason)
    )
    await session.commit()
    logger.info("sessions_invalidated user_id=%s count=%s reason=%s", user_id, ended, reason)
    return ended


async def cleanup_expired_sessions(session: AsyncSession, *, retention_days: int | None = None) -> dict[str, int]:
    # End sessions past expiry, then drop ended ones older than retention.
    settings = get_settings()
    days = retention_days if retention_days is not None else settings.session_cleanup_retention_days
    now = utc_now()
    expired = await session.execute(
        update(UserSession)
        .where(UserSession.is_active.is_(True), UserSession.expires_at <= now)
        .values(is_active=False, ended_at=now, end_reason=END_EXPIRED)
    )
    cutoff = now - timedelta(days=days)
    deleted = await session.execute(
        delete(UserSession).where(
            UserSession.is_active.is_(False),
            UserSession.ended_at.is_not(None),
            UserSession.ended_at < cutoff,
        )
    )
    await session.commit()
    return {"expired": int(expired.rowcount or 0), "deleted": int(deleted.rowcount or 0)}


async def get_session_analytics(session: AsyncSession, *, user_id: int, days: int = 30) -> dict[str, Any]:
    """Aggregate session counts and durations for one user over the last ``days`` days."""
    since = utc_now() - timedelta(days=days)
    window = and_(UserSession.user_id == user_id, UserSession.created_at >= since)
    totals = (
        await session.execute(
            select(
                func.count(UserSession.id),
                func.count(distinct(UserSession.device_hash)),
                func.count(distinct(UserSession.ip_address)),
            ).where(window)
        )
    ).one()
    active = (
        await session.execute(
            select(func.count(UserSession.id)).where(window, UserSession.is_active.is_(True))
        )
    ).scalar_one()

    # Duration math happens in Python so SQLite and Postgres agree.
    rows = (
        await session.execute(
            select(UserSession.created_at, UserSession.ended_at, UserSession.last_accessed_at).where(window)
        )
    ).all()
    durations = []
    for created_at, ended_at, last_accessed_at in rows:
        end = as_utc(ended_at) or as_utc(last_accessed_at)
        start = as_utc(created_at)
        if start is not None and end is not None and end >= start:
            durations.append((end - start).total_seconds() / 60.0)
    average = round(sum(durations) / len(durations), 2) if durations else 0.0
    return {
        "totalSessions": int(totals[0] or 0),
        "activeSessions": int(active or 0),
        "uniqueDevices": int(totals[1] or 0),
        "uniqueIPs": int(totals[2] or 0),
        "averageSessionDuration": average,
        "periodDays": days,
    }
