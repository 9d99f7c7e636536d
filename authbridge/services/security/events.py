from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Any

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import utc_now
from authbridge.core.config import get_settings
from authbridge.domain.models import SecurityEvent
from authbridge.services.audit import sanitize_metadata


logger = logging.getLogger(__name__)

ACTION_LOGIN = "login"
ACTION_REGISTER = "register"
ACTION_REFRESH = "refresh"
ACTION_MFA = "mfa"
ACTION_SMS = "sms"
ACTION_TOKEN_REUSE = "token_reuse"

_SUSPICIOUS_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class SuspiciousActivity:
    # Advisory signal only; callers log and surface it but never block on it.
    suspicious: bool
    reasons: list[str] = field(default_factory=list)


def record_security_event(
    session: AsyncSession,
    *,
    identifier: str,
    action: str,
    success: bool,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> SecurityEvent:
    # Stage an attempt row; the caller's transaction decides when it lands.
    event = SecurityEvent(
        identifier=identifier,
        action=action,
        user_id=user_id,
        ip_address=ip_address,
        user_agent=user_agent,
        success=success,
        metadata_json=sanitize_metadata(metadata or {}),
        created_at=utc_now(),
    )
    session.add(event)
    return event


async def count_events(
    session: AsyncSession,
    *,
    identifier: str,
    action: str,
    since_seconds: int,
    ip_address: str | None = None,
) -> int:
    # Count attempts for one identity/action (and IP when given) inside a sliding window.
    since = utc_now() - timedelta(seconds=since_seconds)
    query = select(func.count(SecurityEvent.id)).where(
        SecurityEvent.identifier == identifier,
        SecurityEvent.action == action,
        SecurityEvent.created_at >= since,
    )
    if ip_address is not None:
        query = query.where(SecurityEvent.ip_address == ip_address)
    result = await session.execute(query)
    return int(result.scalar_one() or 0)


async def oldest_event_at(
    session: AsyncSession,
    *,
    identifier: str,
    action: str,
    since_seconds: int,
    ip_address: str | None = None,
):
    # Earliest attempt still inside the window; it decides when a slot frees up.
    since = utc_now() - timedelta(seconds=since_seconds)
    query = select(func.min(SecurityEvent.created_at)).where(
        SecurityEvent.identifier == identifier,
        SecurityEvent.action == action,
        SecurityEvent.created_at >= since,
    )
    if ip_address is not None:
        query = query.where(SecurityEvent.ip_address == ip_address)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def detect_suspicious_activity(
    session: AsyncSession,
    *,
    user_id: int,
    new_device: bool = False,
) -> SuspiciousActivity:
    """Flag unusual login patterns for a user over the last hour.

    Looks at successful login events already recorded for the user: too many
    distinct source IPs, too many logins, or a login from a device the user
    has not used before.
    """
    settings = get_settings()
    since = utc_now() - _SUSPICIOUS_WINDOW
    base = (
        SecurityEvent.user_id == user_id,
        SecurityEvent.action == ACTION_LOGIN,
        SecurityEvent.success.is_(True),
        SecurityEvent.created_at >= since,
    )
    unique_ips = (
        await session.execute(select(func.count(distinct(SecurityEvent.ip_address))).where(*base))
    ).scalar_one()
    logins = (await session.execute(select(func.count(SecurityEvent.id)).where(*base))).scalar_one()

    reasons: list[str] = []
    if int(unique_ips or 0) > settings.suspicious_unique_ip_threshold:
        reasons.append("multiple_ips")
    if int(logins or 0) > settings.suspicious_login_threshold:
        reasons.append("login_burst")
    if new_device:
        reasons.append("new_device")
    if reasons:
        logger.warning(
            "suspicious_activity_detected user_id=%s reasons=%s", user_id, ",".join(reasons)
        )
    return SuspiciousActivity(suspicious=bool(reasons), reasons=reasons)


async def cleanup_security_events(session: AsyncSession, *, retention_days: int | None = None) -> int:
    # Drop attempt rows past retention; rate windows never look back that far.
    settings = get_settings()
    days = retention_days if retention_days is not None else settings.security_event_retention_days
    cutoff = utc_now() - timedelta(days=days)
    result = await session.execute(delete(SecurityEvent).where(SecurityEvent.created_at < cutoff))
    await session.commit()
    return int(result.rowcount or 0)
