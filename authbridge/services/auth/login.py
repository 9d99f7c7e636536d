from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.config import get_settings
from authbridge.core.errors import (
    AuthenticationError,
    AuthFlowError,
    ForbiddenError,
    LockoutError,
    ProviderError,
    ProviderInvalidCredentialsError,
    ProviderNotFoundError,
    ValidationError,
)
from authbridge.domain.models import User
from authbridge.persistence.repos.users import get_user, get_user_by_email, get_user_by_provider_uid, normalize_email
from authbridge.providers.identity.base import ProviderPrincipal
from authbridge.providers.identity.factory import ProviderContext
from authbridge.services.audit import RequestContext, record_event
from authbridge.services.auth.lockout import check_lockout, clear_failed_attempts, record_failed_login
from authbridge.services.auth.mfa import MfaVerification, verify_mfa_token
from authbridge.services.auth.provider_errors import translate_provider_error
from authbridge.services.auth.rbac import has_permission, resolve_permissions
from authbridge.services.auth.reconciliation import ensure_login_allowed, reconcile_identity
from authbridge.services.auth.resolution import resolve_provider, verify_token_with_fallback
from authbridge.services.auth.sessions import (
    END_LOGOUT,
    create_session,
    invalidate_all_sessions,
    register_device,
)
from authbridge.services.auth.tokens import (
    TokenPair,
    decode_access_token,
    decode_mfa_challenge,
    issue_mfa_challenge,
    issue_token_pair,
)
from authbridge.services.security.events import (
    ACTION_LOGIN,
    ACTION_MFA,
    SuspiciousActivity,
    detect_suspicious_activity,
    record_security_event,
)
from authbridge.services.security.rate_limit import ANONYMOUS_IDENTITY, enforce_attempt_rate_limit


logger = logging.getLogger(__name__)

# Provider failures that count toward the lockout threshold.
_CREDENTIAL_FAILURES = (ProviderNotFoundError, ProviderInvalidCredentialsError)


@dataclass(frozen=True)
class LoginAttempt:
    email: str | None = None
    password: str | None = None
    id_token: str | None = None
    provider: str | None = None
    mfa_token: str | None = None
    device_info: dict[str, Any] | None = None
    remember_me: bool = False


@dataclass(frozen=True)
class LoginOutcome:
    user: User
    provider_type: str
    requires_mfa: bool = False
    challenge_token: str | None = None
    tokens: TokenPair | None = None
    session_id: str | None = None
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    suspicious: SuspiciousActivity | None = None
    mfa_method: str | None = None
    is_new_user: bool = False


async def _record_failure(
    session: AsyncSession,
    *,
    identity: str,
    exc: AuthFlowError,
    context: RequestContext,
    user_id: int | None = None,
) -> None:
    # Failed attempts feed the rate limiter and the audit trail even though the request errors.
    await session.rollback()
    record_security_event(
        session,
        identifier=identity,
        action=ACTION_LOGIN,
        success=False,
        user_id=user_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"reason": exc.code},
    )
    await record_event(
        session=session,
        user_id=user_id,
        action="login_failed",
        compliance_level="high" if isinstance(exc, LockoutError) else "medium",
        outcome="failure",
        resource_type="session",
        context=context,
        metadata={"reason": exc.code, "identity": identity},
    )
    await session.commit()


async def _sign_in_with_password(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    email: str,
    password: str,
    provider_hint: str | None,
) -> tuple[ProviderPrincipal, str]:
    settings = get_settings()
    resolved = await resolve_provider(
        session=session, context=providers, email=email, provider_hint=provider_hint
    )
    try:
        result = await resolved.provider.sign_in(email, password)
        return result.principal, resolved.provider_type
    except ProviderNotFoundError:
        if not settings.enable_universal_auth:
            raise
        fallbacks = [item for item in providers.available_types() if item != resolved.provider_type]
        if not fallbacks:
            raise
    # Universal auth: the principal may still live on the other provider mid-migration.
    last_error: ProviderError | None = None
    for provider_type in fallbacks:
        try:
            result = await providers.require(provider_type).sign_in(email, password)
        except ProviderNotFoundError as exc:
            last_error = exc
            continue
        logger.info(
            "universal_auth_fallback_succeeded from=%s to=%s", resolved.provider_type, provider_type
        )
        return result.principal, provider_type
    raise last_error or ProviderNotFoundError("Unknown principal")


async def _authenticate(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    attempt: LoginAttempt,
    email: str | None,
) -> tuple[ProviderPrincipal, str]:
    if attempt.id_token:
        principal, provider_type = await verify_token_with_fallback(
            context=providers, token=attempt.id_token, provider_hint=attempt.provider
        )
        if email and normalize_email(principal.email) != email:
            raise ProviderInvalidCredentialsError("Token does not belong to the supplied email")
        return principal, provider_type
    return await _sign_in_with_password(
        session,
        providers=providers,
        email=email or "",
        password=attempt.password or "",
        provider_hint=attempt.provider,
    )


async def _verify_second_factor(
    session: AsyncSession,
    *,
    user: User,
    mfa_token: str,
    context: RequestContext,
) -> MfaVerification:
    """Check the supplied second factor; a wrong code counts as a failed login."""
    await enforce_attempt_rate_limit(
        session=session, identity=str(user.id), action=ACTION_MFA, ip_address=context.ip_address
    )
    verification = await verify_mfa_token(session, user_id=user.id, token=mfa_token)
    record_security_event(
        session,
        identifier=str(user.id),
        action=ACTION_MFA,
        success=verification is not None,
        user_id=user.id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"method": verification.method if verification else None},
    )
    # Consumed codes and SMS attempt counters must land whatever happens next.
    await session.commit()
    if verification is None:
        await record_failed_login(
            session, identifier=user.email, ip_address=context.ip_address, reason="invalid_mfa"
        )
        raise AuthenticationError("Invalid MFA code")
    return verification


async def _complete_login(
    session: AsyncSession,
    *,
    user: User,
    identity: str,
    provider_type: str,
    device_info: dict[str, Any] | None,
    remember_me: bool,
    context: RequestContext,
    mfa_method: str | None = None,
    is_new_user: bool = False,
) -> LoginOutcome:
    # Device registration may roll back on a race, so it runs before anything else is staged.
    device, new_device = await register_device(
        session,
        user_id=user.id,
        user_agent=context.user_agent,
        ip_address=context.ip_address,
        device_info=device_info,
    )
    await clear_failed_attempts(session, user.email)
    record_security_event(
        session,
        identifier=identity,
        action=ACTION_LOGIN,
        success=True,
        user_id=user.id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"provider": provider_type, "mfa_method": mfa_method},
    )
    await session.flush()
    suspicious = await detect_suspicious_activity(session, user_id=user.id, new_device=new_device)
    user_session = await create_session(
        session,
        user_id=user.id,
        device_hash=device.device_hash,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        device_info=device_info,
        auth_provider=provider_type,
        remember_me=remember_me,
    )
    tokens = await issue_token_pair(
        session,
        user=user,
        session_id=user_session.session_id,
        device_info=device_info,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    roles, permissions = await resolve_permissions(session, user)
    await record_event(
        session=session,
        user_id=user.id,
        action="user_login",
        compliance_level="medium",
        resource_type="session",
        resource_id=user_session.session_id,
        session_id=user_session.session_id,
        context=context,
        metadata={
            "provider": provider_type,
            "mfa_method": mfa_method,
            "new_user": is_new_user,
            "suspicious": suspicious.reasons,
        },
    )
    session_id = user_session.session_id
    await session.commit()
    logger.info(
        "login_succeeded user_id=%s provider=%s session_id=%s", user.id, provider_type, session_id
    )
    return LoginOutcome(
        user=user,
        provider_type=provider_type,
        tokens=tokens,
        session_id=session_id,
        roles=roles,
        permissions=permissions,
        suspicious=suspicious,
        mfa_method=mfa_method,
        is_new_user=is_new_user,
    )


async def _login(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    attempt: LoginAttempt,
    email: str | None,
    identity: str,
    context: RequestContext,
) -> LoginOutcome:
    if email:
        # Locked accounts are rejected before the provider sees the password.
        await check_lockout(session, email)

    try:
        principal, provider_type = await _authenticate(
            session, providers=providers, attempt=attempt, email=email
        )
    except ProviderError as exc:
        if email and isinstance(exc, _CREDENTIAL_FAILURES):
            await record_failed_login(
                session, identifier=email, ip_address=context.ip_address, reason=exc.kind
            )
        raise translate_provider_error(exc) from exc

    user, created = await reconcile_identity(
        session=session, principal=principal, provider_type=provider_type
    )
    ensure_login_allowed(user)
    if not email:
        await check_lockout(session, user.email)

    mfa_method = None
    if user.mfa_enabled:
        if not attempt.mfa_token:
            record_security_event(
                session,
                identifier=identity,
                action=ACTION_LOGIN,
                success=False,
                user_id=user.id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                metadata={"reason": "mfa_required"},
            )
            await session.commit()
            logger.info("login_mfa_required user_id=%s", user.id)
            return LoginOutcome(
                user=user,
                provider_type=provider_type,
                requires_mfa=True,
                challenge_token=issue_mfa_challenge(
                    user_id=user.id,
                    provider_type=provider_type,
                    remember_me=attempt.remember_me,
                    device_info=attempt.device_info,
                ),
                is_new_user=created,
            )
        verification = await _verify_second_factor(
            session, user=user, mfa_token=attempt.mfa_token, context=context
        )
        mfa_method = verification.method

    return await _complete_login(
        session,
        user=user,
        identity=identity,
        provider_type=provider_type,
        device_info=attempt.device_info,
        remember_me=attempt.remember_me,
        context=context,
        mfa_method=mfa_method,
        is_new_user=created,
    )


async def login(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    attempt: LoginAttempt,
    context: RequestContext | None = None,
) -> LoginOutcome:
    """Authenticate a password or provider-token login end to end.

    Order: rate limit, lockout gate, provider authentication, reconciliation,
    MFA gate, then session and token issuance. An MFA-required outcome carries
    a challenge token and no credentials.
    """
    context = context or RequestContext()
    if not attempt.id_token and not (attempt.email and attempt.password):
        raise ValidationError("Provide email and password, or an idToken")
    email = normalize_email(attempt.email) if attempt.email else None
    identity = email or ANONYMOUS_IDENTITY
    await enforce_attempt_rate_limit(
        session=session, identity=identity, action=ACTION_LOGIN, ip_address=context.ip_address
    )
    try:
        return await _login(
            session,
            providers=providers,
            attempt=attempt,
            email=email,
            identity=identity,
            context=context,
        )
    except AuthFlowError as exc:
        if exc.status_code == 429:
            raise
        await _record_failure(session, identity=identity, exc=exc, context=context)
        raise


async def complete_mfa_login(
    session: AsyncSession,
    *,
    challenge_token: str,
    mfa_token: str,
    device_info: dict[str, Any] | None = None,
    context: RequestContext | None = None,
) -> LoginOutcome:
    # Finish a login that stopped at the MFA gate without re-sending the first factor.
    context = context or RequestContext()
    challenge = decode_mfa_challenge(challenge_token)
    user = await get_user(session, challenge.user_id)
    if user is None:
        raise AuthenticationError("Invalid challenge")
    identity = user.email
    await enforce_attempt_rate_limit(
        session=session, identity=identity, action=ACTION_LOGIN, ip_address=context.ip_address
    )
    try:
        ensure_login_allowed(user)
        await check_lockout(session, user.email)
        if not user.mfa_enabled:
            raise AuthenticationError("MFA is not enabled for this account")
        verification = await _verify_second_factor(
            session, user=user, mfa_token=mfa_token, context=context
        )
        return await _complete_login(
            session,
            user=user,
            identity=identity,
            provider_type=challenge.provider_type or user.current_auth_provider,
            device_info=device_info if device_info is not None else challenge.device_info,
            remember_me=challenge.remember_me,
            context=context,
            mfa_method=verification.method,
        )
    except AuthFlowError as exc:
        if exc.status_code == 429:
            raise
        await _record_failure(session, identity=identity, exc=exc, context=context, user_id=user.id)
        raise


async def _user_from_provider_token(
    session: AsyncSession, *, providers: ProviderContext, token: str
) -> tuple[User, str]:
    principal, provider_type = await verify_token_with_fallback(context=providers, token=token)
    user = await get_user_by_provider_uid(
        session, provider_type=provider_type, provider_uid=principal.uid
    )
    if user is None and principal.email:
        user = await get_user_by_email(session, principal.email)
    if user is None:
        raise AuthenticationError("Unknown user")
    return user, provider_type


async def logout(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    access_token: str,
    user_id: int | None = None,
    context: RequestContext | None = None,
) -> int:
    """End every session of the token's user and revoke their refresh tokens.

    Accepts either an access token issued here or a provider token; provider
    tokens are also signed out at the provider on a best-effort basis.
    Returns the number of sessions ended.
    """
    context = context or RequestContext()
    provider_type = None
    try:
        claims = decode_access_token(access_token)
        user = await get_user(session, claims.user_id)
        if user is None:
            raise AuthenticationError("Unknown user")
    except AuthenticationError:
        try:
            user, provider_type = await _user_from_provider_token(
                session, providers=providers, token=access_token
            )
        except ProviderError as exc:
            raise AuthenticationError("Invalid access token") from exc

    target_id = user.id
    if user_id is not None and user_id != user.id:
        if not await has_permission(session, user, "users:manage"):
            raise ForbiddenError("Cannot log out another user")
        target_id = user_id

    if provider_type is not None:
        try:
            await providers.require(provider_type).sign_out(access_token)
        except (ProviderError, AuthFlowError) as exc:
            logger.warning("provider_sign_out_failed provider=%s", provider_type, exc_info=exc)

    await record_event(
        session=session,
        user_id=target_id,
        action="user_logout",
        compliance_level="low",
        resource_type="session",
        context=context,
        metadata={"performed_by": user.id, "provider_sign_out": provider_type is not None},
    )
    ended = await invalidate_all_sessions(session, user_id=target_id, reason=END_LOGOUT)
    logger.info("logout_completed user_id=%s sessions=%s", target_id, ended)
    return ended
