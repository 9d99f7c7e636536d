from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import secrets
from typing import Any

import jwt
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import as_utc, utc_now
from authbridge.core.config import get_settings
from authbridge.core.errors import AuthenticationError, AuthFlowError, TokenTheftError
from authbridge.domain.models import RefreshToken, User, UserSession
from authbridge.services.audit import RequestContext, record_event
from authbridge.services.auth.sessions import END_TOKEN_THEFT, end_user_sessions
from authbridge.services.security.events import ACTION_REFRESH, ACTION_TOKEN_REUSE, record_security_event
from authbridge.services.security.rate_limit import ANONYMOUS_IDENTITY, enforce_attempt_rate_limit


logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
MFA_CHALLENGE_TYPE = "mfa_challenge"
TOKEN_TYPE_BEARER = "Bearer"

REVOKED_ROTATED = "rotated"
REVOKED_REUSE = "reuse_detected"
REVOKED_LOGOUT = "logout"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE_BEARER


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    email: str
    role: str
    auth_provider: str | None
    session_id: str | None
    expires_at: datetime


@dataclass(frozen=True)
class MfaChallenge:
    user_id: int
    provider_type: str
    remember_me: bool
    device_info: dict[str, Any] | None


@dataclass(frozen=True)
class RotationResult:
    user: User
    tokens: TokenPair
    session_id: str | None


def _encode(claims: dict[str, Any]) -> str:
    settings = get_settings()
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode(token: str, *, expected_type: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid token") from exc
    if claims.get("typ") != expected_type:
        raise AuthenticationError("Invalid token type")
    return claims


def issue_access_token(*, user: User, session_id: str | None) -> str:
    # Short-lived HS256 token; the bound session is re-checked on every request.
    settings = get_settings()
    now = utc_now()
    claims = {
        "sub": str(user.id),
        "userId": user.id,
        "email": user.email,
        "role": user.role,
        "authProvider": user.current_auth_provider,
        "sid": session_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=settings.access_token_ttl_seconds)).timestamp()),
        "iss": settings.jwt_issuer,
        "typ": ACCESS_TOKEN_TYPE,
    }
    return _encode(claims)


def decode_access_token(token: str) -> AccessClaims:
    claims = _decode(token, expected_type=ACCESS_TOKEN_TYPE)
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid token subject") from exc
    return AccessClaims(
        user_id=user_id,
        email=str(claims.get("email") or ""),
        role=str(claims.get("role") or ""),
        auth_provider=claims.get("authProvider"),
        session_id=claims.get("sid"),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=utc_now().tzinfo),
    )


def issue_mfa_challenge(
    *,
    user_id: int,
    provider_type: str,
    remember_me: bool = False,
    device_info: dict[str, Any] | None = None,
) -> str:
    # Proof that the first factor passed; it is not accepted as an access token.
    settings = get_settings()
    now = utc_now()
    claims = {
        "sub": str(user_id),
        "provider": provider_type,
        "rememberMe": remember_me,
        "deviceInfo": device_info,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=settings.mfa_challenge_ttl_seconds)).timestamp()),
        "iss": settings.jwt_issuer,
        "typ": MFA_CHALLENGE_TYPE,
        "jti": secrets.token_hex(8),
    }
    return _encode(claims)


def decode_mfa_challenge(token: str) -> MfaChallenge:
    claims = _decode(token, expected_type=MFA_CHALLENGE_TYPE)
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid challenge subject") from exc
    return MfaChallenge(
        user_id=user_id,
        provider_type=str(claims.get("provider") or ""),
        remember_me=bool(claims.get("rememberMe")),
        device_info=claims.get("deviceInfo"),
    )


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def create_refresh_token(
    session: AsyncSession,
    *,
    user_id: int,
    session_id: str | None,
    device_info: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> tuple[str, RefreshToken]:
    # Persist only the hash; the raw value is returned once to the caller.
    settings = get_settings()
    raw = generate_refresh_token()
    now = utc_now()
    row = RefreshToken(
        user_id=user_id,
        token_hash=hash_refresh_token(raw),
        session_id=session_id,
        device_info=device_info,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=now,
        expires_at=now + timedelta(hours=settings.refresh_token_ttl_hours),
    )
    session.add(row)
    await session.flush()
    return raw, row


async def issue_token_pair(
    session: AsyncSession,
    *,
    user: User,
    session_id: str | None,
    device_info: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TokenPair:
    # Stage a fresh pair for a completed login; the caller commits.
    settings = get_settings()
    raw, _ = await create_refresh_token(
        session,
        user_id=user.id,
        session_id=session_id,
        device_info=device_info,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return TokenPair(
        access_token=issue_access_token(user=user, session_id=session_id),
        refresh_token=raw,
        expires_in=settings.access_token_ttl_seconds,
    )


async def revoke_all_user_tokens(session: AsyncSession, *, user_id: int, reason: str) -> int:
    # One statement so no token of the user survives a concurrent rotation.
    result = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=utc_now(), revoked_reason=reason)
    )
    return int(result.rowcount or 0)


async def _claim_token(session: AsyncSession, *, token_id: int) -> bool:
    # Conditional revoke: exactly one concurrent presenter can flip revoked_at.
    result = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.id == token_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=utc_now(), revoked_reason=REVOKED_ROTATED)
    )
    return result.rowcount == 1


async def handle_token_reuse(
    session: AsyncSession,
    *,
    user_id: int,
    token_id: int,
    context: RequestContext | None = None,
) -> None:
    """Respond to a replayed refresh token by revoking everything the user holds.

    Commits the revocation before raising TokenTheftError so the legitimate
    client has to re-authenticate as well.
    """
    context = context or RequestContext()
    revoked = await revoke_all_user_tokens(session, user_id=user_id, reason=REVOKED_REUSE)
    ended = await end_user_sessions(session, user_id=user_id, reason=END_TOKEN_THEFT)
    record_security_event(
        session,
        identifier=str(user_id),
        action=ACTION_TOKEN_REUSE,
        success=False,
        user_id=user_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"refresh_id": token_id, "revoked": revoked},
    )
    await record_event(
        session=session,
        user_id=user_id,
        action="token_theft_detected",
        compliance_level="critical",
        outcome="failure",
        resource_type="refresh_token",
        resource_id=str(token_id),
        context=context,
        metadata={"revoked_count": revoked, "ended_sessions": ended},
    )
    await session.commit()
    logger.warning(
        "refresh_token_reuse_detected user_id=%s token_id=%s revoked=%s", user_id, token_id, revoked
    )
    raise TokenTheftError()


async def rotate_refresh_token(
    session: AsyncSession,
    *,
    refresh_token: str,
    context: RequestContext | None = None,
) -> RotationResult:
    """Exchange a valid refresh token for a new pair, exactly once.

    Unknown and expired tokens are rejected with 401. A token that is already
    revoked, including one that loses a concurrent rotation, is treated as
    stolen.
    """
    settings = get_settings()
    context = context or RequestContext()
    result = await session.execute(
        select(RefreshToken).where(RefreshToken.token_hash == hash_refresh_token(refresh_token))
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise AuthenticationError("Invalid refresh token")
    token_id = row.id
    user_id = row.user_id
    if row.revoked_at is not None:
        await handle_token_reuse(session, user_id=user_id, token_id=token_id, context=context)
    if as_utc(row.expires_at) <= utc_now():
        raise AuthenticationError("Refresh token expired")

    if row.session_id:
        bound = (
            await session.execute(select(UserSession).where(UserSession.session_id == row.session_id))
        ).scalar_one_or_none()
        if bound is not None and (not bound.is_active or as_utc(bound.expires_at) <= utc_now()):
            raise AuthenticationError("Session has ended")

    user = await session.get(User, user_id)
    if user is None or user.is_anonymized or user.account_status in {"suspended", "deactivated"}:
        raise AuthenticationError("Invalid refresh token")

    if not await _claim_token(session, token_id=token_id):
        # Another request rotated this token between our read and our write.
        await session.rollback()
        await handle_token_reuse(session, user_id=user_id, token_id=token_id, context=context)

    raw, successor = await create_refresh_token(
        session,
        user_id=user_id,
        session_id=row.session_id,
        device_info=row.device_info,
        ip_address=context.ip_address or row.ip_address,
        user_agent=context.user_agent or row.user_agent,
    )
    await session.execute(
        update(RefreshToken).where(RefreshToken.id == token_id).values(replaced_by_id=successor.id)
    )
    session_id = row.session_id
    access_token = issue_access_token(user=user, session_id=session_id)
    await session.commit()
    logger.info("refresh_token_rotated user_id=%s token_id=%s", user_id, token_id)
    return RotationResult(
        user=user,
        tokens=TokenPair(
            access_token=access_token,
            refresh_token=raw,
            expires_in=settings.access_token_ttl_seconds,
        ),
        session_id=session_id,
    )


async def refresh_tokens(
    session: AsyncSession,
    *,
    refresh_token: str,
    context: RequestContext | None = None,
) -> RotationResult:
    # Rate-limited entry point for the refresh endpoint; each attempt leaves one security event.
    context = context or RequestContext()
    if not refresh_token:
        raise AuthenticationError("Refresh token is required")
    await enforce_attempt_rate_limit(
        session=session,
        identity=ANONYMOUS_IDENTITY,
        action=ACTION_REFRESH,
        ip_address=context.ip_address,
    )
    try:
        result = await rotate_refresh_token(session, refresh_token=refresh_token, context=context)
    except AuthFlowError as exc:
        await session.rollback()
        record_security_event(
            session,
            identifier=ANONYMOUS_IDENTITY,
            action=ACTION_REFRESH,
            success=False,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={"reason": exc.code},
        )
        await session.commit()
        raise
    record_security_event(
        session,
        identifier=ANONYMOUS_IDENTITY,
        action=ACTION_REFRESH,
        success=True,
        user_id=result.user.id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    await session.commit()
    return result
