from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from authbridge.core.clock import as_utc, utc_now
from authbridge.core.errors import AuthenticationError, NotFoundError
from authbridge.domain.models import RefreshToken, User, UserSession
from authbridge.persistence.db import SessionLocal
from authbridge.services.auth.sessions import (
    END_EXPIRED,
    END_IDLE,
    cleanup_expired_sessions,
    compute_device_hash,
    create_session,
    get_active_sessions,
    get_session_analytics,
    invalidate_all_sessions,
    invalidate_session,
    list_devices,
    register_device,
    touch_session,
    trust_device,
)
from authbridge.services.auth.tokens import issue_token_pair
from authbridge.tests.utils.auth import create_test_user


def test_device_hash_ignores_key_order() -> None:
    first = compute_device_hash(user_agent="ua", ip_address="1.1.1.1", device_info={"a": 1, "b": 2})
    second = compute_device_hash(user_agent="ua", ip_address="1.1.1.1", device_info={"b": 2, "a": 1})
    other = compute_device_hash(user_agent="ua", ip_address="2.2.2.2", device_info={"a": 1, "b": 2})
    assert first == second
    assert first != other
    assert len(first) == 64


async def _new_session(user_id: int, *, remember_me: bool = False, ip_address: str = "10.0.0.1") -> str:
    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        record = await create_session(
            session,
            user_id=user_id,
            device_hash=compute_device_hash(user_agent="pytest", ip_address=ip_address, device_info=None),
            ip_address=ip_address,
            user_agent="pytest",
            device_info=None,
            auth_provider="cognito",
            remember_me=remember_me,
        )
        await issue_token_pair(session, user=user, session_id=record.session_id)
        await session.commit()
        return record.session_id


async def _set_last_access(session_id: str, minutes_ago: int) -> None:
    async with SessionLocal() as session:
        record = (
            await session.execute(select(UserSession).where(UserSession.session_id == session_id))
        ).scalar_one()
        record.last_accessed_at = utc_now() - timedelta(minutes=minutes_ago)
        await session.commit()


async def _get(session_id: str) -> UserSession:
    async with SessionLocal() as session:
        return (
            await session.execute(select(UserSession).where(UserSession.session_id == session_id))
        ).scalar_one()


@pytest.mark.asyncio
async def test_remember_me_extends_absolute_expiry() -> None:
    user_id = await create_test_user(email="remember@example.com")
    short = await _get(await _new_session(user_id))
    long = await _get(await _new_session(user_id, remember_me=True))
    assert as_utc(short.expires_at) - utc_now() <= timedelta(hours=12)
    assert as_utc(long.expires_at) - utc_now() > timedelta(days=29)


@pytest.mark.asyncio
async def test_idle_session_is_ended_on_use() -> None:
    user_id = await create_test_user(email="idle@example.com")
    session_id = await _new_session(user_id)
    await _set_last_access(session_id, minutes_ago=45)
    async with SessionLocal() as session:
        with pytest.raises(AuthenticationError):
            await touch_session(session, session_id)
    record = await _get(session_id)
    assert record.is_active is False
    assert record.end_reason == END_IDLE


@pytest.mark.asyncio
async def test_remember_me_session_survives_idle_period() -> None:
    user_id = await create_test_user(email="idle-remember@example.com")
    session_id = await _new_session(user_id, remember_me=True)
    await _set_last_access(session_id, minutes_ago=45)
    async with SessionLocal() as session:
        record = await touch_session(session, session_id)
        await session.commit()
    assert as_utc(record.last_accessed_at) > utc_now() - timedelta(minutes=1)


@pytest.mark.asyncio
async def test_expired_session_is_ended_on_use() -> None:
    user_id = await create_test_user(email="expire@example.com")
    session_id = await _new_session(user_id)
    async with SessionLocal() as session:
        record = (
            await session.execute(select(UserSession).where(UserSession.session_id == session_id))
        ).scalar_one()
        record.expires_at = utc_now() - timedelta(seconds=1)
        await session.commit()
    async with SessionLocal() as session:
        with pytest.raises(AuthenticationError):
            await touch_session(session, session_id)
    assert (await _get(session_id)).end_reason == END_EXPIRED


@pytest.mark.asyncio
async def test_invalidate_session_revokes_bound_tokens() -> None:
    user_id = await create_test_user(email="single@example.com")
    keep = await _new_session(user_id)
    drop = await _new_session(user_id, ip_address="10.0.0.2")
    async with SessionLocal() as session:
        assert await invalidate_session(session, user_id=user_id, session_id=drop) is True
        assert await invalidate_session(session, user_id=user_id, session_id=drop) is False
        active = await get_active_sessions(session, user_id=user_id)
        tokens = (await session.execute(select(RefreshToken))).scalars().all()
    assert [item.session_id for item in active] == [keep]
    by_session = {item.session_id: item.revoked_at for item in tokens}
    assert by_session[drop] is not None
    assert by_session[keep] is None


@pytest.mark.asyncio
async def test_invalidate_all_can_spare_current_session() -> None:
    user_id = await create_test_user(email="all@example.com")
    current = await _new_session(user_id)
    await _new_session(user_id, ip_address="10.0.0.2")
    await _new_session(user_id, ip_address="10.0.0.3")
    async with SessionLocal() as session:
        ended = await invalidate_all_sessions(session, user_id=user_id, exclude_session_id=current)
        active = await get_active_sessions(session, user_id=user_id)
        live_tokens = (
            await session.execute(select(RefreshToken).where(RefreshToken.revoked_at.is_(None)))
        ).scalars().all()
    assert ended == 2
    assert [item.session_id for item in active] == [current]
    assert [item.session_id for item in live_tokens] == [current]


@pytest.mark.asyncio
async def test_device_registration_flags_only_additional_devices() -> None:
    user_id = await create_test_user(email="devices@example.com")
    async with SessionLocal() as session:
        first, first_new = await register_device(
            session, user_id=user_id, user_agent="iPhone Mobile", ip_address="10.0.0.1", device_info=None
        )
        again, again_new = await register_device(
            session, user_id=user_id, user_agent="iPhone Mobile", ip_address="10.0.0.1", device_info=None
        )
        second, second_new = await register_device(
            session,
            user_id=user_id,
            user_agent="Desktop",
            ip_address="10.0.0.2",
            device_info={"deviceName": "Work laptop"},
        )
        await session.commit()
    assert first_new is False
    assert again.device_hash == first.device_hash and again_new is False
    assert second_new is True
    assert first.device_type == "mobile"
    assert second.device_name == "Work laptop"


@pytest.mark.asyncio
async def test_trust_device_requires_known_device() -> None:
    user_id = await create_test_user(email="trust@example.com")
    async with SessionLocal() as session:
        device, _ = await register_device(
            session, user_id=user_id, user_agent="ua", ip_address="10.0.0.1", device_info=None
        )
        await session.commit()
        with pytest.raises(NotFoundError):
            await trust_device(session, user_id=user_id, device_hash="0" * 64)
        trusted = await trust_device(session, user_id=user_id, device_hash=device.device_hash)
        devices = await list_devices(session, user_id)
    assert trusted.is_trusted is True
    assert trusted.trusted_at is not None
    assert [item.device_hash for item in devices] == [device.device_hash]


@pytest.mark.asyncio
async def test_cleanup_expires_and_prunes_sessions() -> None:
    user_id = await create_test_user(email="cleanup-sessions@example.com")
    stale = await _new_session(user_id)
    old_ended = await _new_session(user_id, ip_address="10.0.0.2")
    live = await _new_session(user_id, ip_address="10.0.0.3")
    async with SessionLocal() as session:
        rows = {
            item.session_id: item
            for item in (await session.execute(select(UserSession))).scalars().all()
        }
        rows[stale].expires_at = utc_now() - timedelta(minutes=1)
        rows[old_ended].is_active = False
        rows[old_ended].ended_at = utc_now() - timedelta(days=30)
        await session.commit()
    async with SessionLocal() as session:
        counts = await cleanup_expired_sessions(session, retention_days=7)
        remaining = {item.session_id for item in (await session.execute(select(UserSession))).scalars().all()}
    assert counts == {"expired": 1, "deleted": 1}
    assert remaining == {stale, live}


@pytest.mark.asyncio
async def test_session_analytics_counts_devices_and_ips() -> None:
    user_id = await create_test_user(email="analytics@example.com")
    first = await _new_session(user_id)
    await _new_session(user_id, ip_address="10.0.0.2")
    async with SessionLocal() as session:
        await invalidate_session(session, user_id=user_id, session_id=first)
        analytics = await get_session_analytics(session, user_id=user_id, days=7)
    assert analytics["totalSessions"] == 2
    assert analytics["activeSessions"] == 1
    assert analytics["uniqueDevices"] == 2
    assert analytics["uniqueIPs"] == 2
    assert analytics["periodDays"] == 7
    assert analytics["averageSessionDuration"] >= 0.0
