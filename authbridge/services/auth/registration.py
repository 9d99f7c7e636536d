from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import utc_now
from authbridge.core.config import get_settings
from authbridge.core.errors import (
    AuthFlowError,
    ConflictError,
    NotFoundError,
    ProviderError,
    ProviderNotFoundError,
    ValidationError,
)
from authbridge.domain.models import ClientProfile, ProviderMapping, User
from authbridge.persistence.repos.users import find_duplicate, get_user_by_email, normalize_email
from authbridge.providers.identity.base import SignUpAttributes, format_phone_number
from authbridge.providers.identity.factory import ProviderContext
from authbridge.services.audit import RequestContext, record_event
from authbridge.services.auth.lockout import clear_failed_attempts
from authbridge.services.auth.provider_errors import translate_provider_error
from authbridge.services.auth.resolution import resolve_provider, signup_source, validate_provider_hint
from authbridge.services.auth.sessions import END_PASSWORD_RESET, invalidate_all_sessions
from authbridge.services.security.events import ACTION_REGISTER, record_security_event
from authbridge.services.security.rate_limit import enforce_attempt_rate_limit


logger = logging.getLogger(__name__)

ACTION_RECOVERY = "recovery"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Registration:
    email: str
    password: str
    first_name: str
    last_name: str
    role: str = "client"
    phone_number: str | None = None
    country_code: str | None = None
    provider: str | None = None


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    provider_type: str


def validate_email(email: str | None) -> str:
    normalized = normalize_email(email or "")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValidationError("Invalid email address", details={"field": "email"})
    return normalized


def password_violations(password: str) -> list[str]:
    # Collect every failed rule so clients can show them together.
    settings = get_settings()
    violations: list[str] = []
    if len(password) < settings.password_min_length:
        violations.append(f"at least {settings.password_min_length} characters")
    if settings.password_require_uppercase and not re.search(r"[A-Z]", password):
        violations.append("an uppercase letter")
    if settings.password_require_lowercase and not re.search(r"[a-z]", password):
        violations.append("a lowercase letter")
    if settings.password_require_digit and not re.search(r"\d", password):
        violations.append("a digit")
    if settings.password_require_symbol and not re.search(r"[^A-Za-z0-9]", password):
        violations.append("a symbol")
    return violations


def validate_password(password: str | None) -> None:
    violations = password_violations(password or "")
    if violations:
        raise ValidationError("Password does not meet policy", details={"requirements": violations})


def validate_role(role: str) -> str:
    allowed = [item.strip() for item in get_settings().self_register_roles.split(",") if item.strip()]
    if role not in allowed:
        raise ValidationError("Role is not available for self-registration", details={"allowed": allowed})
    return role


async def check_duplicate(
    session: AsyncSession,
    *,
    email: str | None,
    phone_number: str | None = None,
    country_code: str | None = None,
) -> None:
    # 409 names the taken field; nothing is returned when both are free.
    normalized_email = normalize_email(email) if email else None
    phone = format_phone_number(phone_number, country_code)
    if not normalized_email and not phone:
        raise ValidationError("Provide an email or a phone number")
    existing = await find_duplicate(session, email=normalized_email, phone_number=phone)
    if existing is None:
        return
    field_name = "email" if normalized_email and existing.email == normalized_email else "phone_number"
    raise ConflictError(f"An account with this {field_name.replace('_', ' ')} already exists", details={"field": field_name})


async def _create_local_user(
    session: AsyncSession,
    *,
    registration: Registration,
    email: str,
    phone: str | None,
    provider_type: str,
    provider_uid: str,
) -> User:
    source, platform = signup_source(provider_type)
    user = User(
        email=email,
        first_name=registration.first_name,
        last_name=registration.last_name,
        phone_number=phone,
        role=registration.role,
        account_status="pending_verification",
        current_auth_provider=provider_type,
        auth_provider_id=provider_uid,
        auth_provider_type=provider_type,
        signup_source=source,
        signup_platform=platform,
        is_verified=False,
        email_verified=False,
        login_count=0,
    )
    session.add(user)
    await session.flush()
    session.add(
        ProviderMapping(
            user_id=user.id,
            provider_type=provider_type,
            provider_uid=provider_uid,
            provider_email=email,
            is_primary=True,
        )
    )
    if registration.role == "client":
        session.add(ClientProfile(user_id=user.id, status="pending_verification"))
    await session.flush()
    return user


async def _register(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    registration: Registration,
    email: str,
    context: RequestContext,
) -> RegistrationResult:
    validate_password(registration.password)
    validate_role(registration.role)
    if not registration.first_name.strip() or not registration.last_name.strip():
        raise ValidationError("First and last name are required")
    phone = format_phone_number(registration.phone_number, registration.country_code)
    await check_duplicate(session, email=email, phone_number=phone)

    hint = validate_provider_hint(registration.provider)
    provider = providers.get(hint) if hint else None
    if provider is None:
        provider = providers.primary()
    provider_type = provider.provider_type
    try:
        provider_uid = await provider.sign_up(
            email,
            registration.password,
            SignUpAttributes(
                first_name=registration.first_name,
                last_name=registration.last_name,
                role=registration.role,
                phone_number=registration.phone_number,
                country_code=registration.country_code,
            ),
        )
    except ProviderError as exc:
        raise translate_provider_error(exc) from exc

    try:
        user = await _create_local_user(
            session,
            registration=registration,
            email=email,
            phone=phone,
            provider_type=provider_type,
            provider_uid=provider_uid,
        )
    except IntegrityError as exc:
        # A concurrent registration won; the provider account is left for the winner's login.
        await session.rollback()
        logger.warning("registration_conflict provider=%s", provider_type)
        raise ConflictError("An account with this email already exists", details={"field": "email"}) from exc

    record_security_event(
        session,
        identifier=email,
        action=ACTION_REGISTER,
        success=True,
        user_id=user.id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"provider": provider_type},
    )
    await record_event(
        session=session,
        user_id=user.id,
        action="user_registered",
        compliance_level="medium",
        resource_type="user",
        resource_id=str(user.id),
        new_values={"email": email, "role": user.role, "provider": provider_type},
        context=context,
    )
    await session.commit()
    logger.info("user_registered user_id=%s provider=%s", user.id, provider_type)
    return RegistrationResult(user=user, provider_type=provider_type)


async def register(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    registration: Registration,
    context: RequestContext | None = None,
) -> RegistrationResult:
    """Create the principal on the primary provider and the local user up front.

    The user starts in ``pending_verification`` until ``confirm`` succeeds.
    """
    context = context or RequestContext()
    email = validate_email(registration.email)
    await enforce_attempt_rate_limit(
        session=session, identity=email, action=ACTION_REGISTER, ip_address=context.ip_address
    )
    try:
        return await _register(
            session, providers=providers, registration=registration, email=email, context=context
        )
    except AuthFlowError as exc:
        if exc.status_code == 429:
            raise
        await session.rollback()
        record_security_event(
            session,
            identifier=email,
            action=ACTION_REGISTER,
            success=False,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={"reason": exc.code},
        )
        await session.commit()
        raise


async def confirm(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    email: str,
    code: str,
    provider_hint: str | None = None,
    context: RequestContext | None = None,
) -> User | None:
    # Provider confirmation first; the local row follows only on success.
    context = context or RequestContext()
    email = validate_email(email)
    if not code or not code.strip():
        raise ValidationError("Confirmation code is required")
    resolved = await resolve_provider(
        session=session, context=providers, email=email, provider_hint=provider_hint
    )
    try:
        await resolved.provider.confirm_sign_up(email, code.strip())
    except ProviderNotFoundError as exc:
        raise NotFoundError("Account not found") from exc
    except ProviderError as exc:
        raise translate_provider_error(exc) from exc

    user = await get_user_by_email(session, email)
    if user is None:
        # Registered outside this service; the first login provisions the row.
        logger.info("confirm_without_local_user provider=%s", resolved.provider_type)
        return None
    now = utc_now()
    old_status = user.account_status
    user.is_verified = True
    user.email_verified = True
    user.verified_at = now
    if user.account_status == "pending_verification":
        user.account_status = "active"
    await session.execute(
        update(ClientProfile)
        .where(ClientProfile.user_id == user.id, ClientProfile.status == "pending_verification")
        .values(status="active", updated_at=now)
    )
    await record_event(
        session=session,
        user_id=user.id,
        action="user_verified",
        compliance_level="medium",
        resource_type="user",
        resource_id=str(user.id),
        old_values={"account_status": old_status},
        new_values={"account_status": user.account_status},
        context=context,
    )
    await session.commit()
    return user


async def _recovery_call(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    email: str,
    provider_hint: str | None,
    operation: str,
    context: RequestContext,
) -> str:
    email = validate_email(email)
    await enforce_attempt_rate_limit(
        session=session, identity=email, action=ACTION_RECOVERY, ip_address=context.ip_address
    )
    record_security_event(
        session,
        identifier=email,
        action=ACTION_RECOVERY,
        success=True,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"operation": operation},
    )
    await session.commit()
    resolved = await resolve_provider(
        session=session, context=providers, email=email, provider_hint=provider_hint
    )
    try:
        await getattr(resolved.provider, operation)(email)
    except ProviderNotFoundError:
        # Unknown emails report success so responses do not reveal which accounts exist.
        logger.info("recovery_unknown_principal operation=%s", operation)
    except ProviderError as exc:
        raise translate_provider_error(exc) from exc
    return resolved.provider_type


async def resend_code(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    email: str,
    provider_hint: str | None = None,
    context: RequestContext | None = None,
) -> str:
    return await _recovery_call(
        session,
        providers=providers,
        email=email,
        provider_hint=provider_hint,
        operation="resend_code",
        context=context or RequestContext(),
    )


async def forgot_password(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    email: str,
    provider_hint: str | None = None,
    context: RequestContext | None = None,
) -> str:
    return await _recovery_call(
        session,
        providers=providers,
        email=email,
        provider_hint=provider_hint,
        operation="forgot_password",
        context=context or RequestContext(),
    )


async def reset_password(
    session: AsyncSession,
    *,
    providers: ProviderContext,
    email: str,
    code: str,
    new_password: str,
    provider_hint: str | None = None,
    context: RequestContext | None = None,
) -> dict[str, Any]:
    """Set a new password with a reset code and end every existing session."""
    context = context or RequestContext()
    email = validate_email(email)
    validate_password(new_password)
    if not code or not code.strip():
        raise ValidationError("Reset code is required")
    await enforce_attempt_rate_limit(
        session=session, identity=email, action=ACTION_RECOVERY, ip_address=context.ip_address
    )
    record_security_event(
        session,
        identifier=email,
        action=ACTION_RECOVERY,
        success=True,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"operation": "reset_password"},
    )
    await session.commit()
    resolved = await resolve_provider(
        session=session, context=providers, email=email, provider_hint=provider_hint
    )
    try:
        await resolved.provider.confirm_forgot_password(email, code.strip(), new_password)
    except ProviderNotFoundError as exc:
        raise ValidationError("Invalid or expired code") from exc
    except ProviderError as exc:
        raise translate_provider_error(exc) from exc

    user = await get_user_by_email(session, email)
    ended = 0
    if user is not None:
        await clear_failed_attempts(session, email)
        await record_event(
            session=session,
            user_id=user.id,
            action="password_reset",
            compliance_level="high",
            resource_type="user",
            resource_id=str(user.id),
            context=context,
        )
        # Commits the staged audit row and lockout reset together with the revocation.
        ended = await invalidate_all_sessions(session, user_id=user.id, reason=END_PASSWORD_RESET)
    return {"provider": resolved.provider_type, "sessionsEnded": ended}
