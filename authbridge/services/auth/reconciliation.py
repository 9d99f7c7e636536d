from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import utc_now
from authbridge.core.config import get_settings
from authbridge.core.errors import DatabaseError, ForbiddenError, ValidationError
from authbridge.domain.models import ClientProfile, ProviderMapping, User
from authbridge.persistence.repos.users import (
    get_mapping,
    get_user_by_email,
    get_user_by_provider_uid,
    list_mappings,
    normalize_email,
)
from authbridge.providers.identity.base import ProviderPrincipal
from authbridge.services.auth.resolution import signup_source


logger = logging.getLogger(__name__)

_BLOCKED_STATUSES = {"suspended", "deactivated"}


def _jit_role(role_hint: str | None) -> str:
    # Token role hints are client-controlled on some providers; only honour self-service roles.
    allowed = {item.strip() for item in get_settings().self_register_roles.split(",") if item.strip()}
    if role_hint and role_hint in allowed:
        return role_hint
    return "client"


async def _find_user(
    session: AsyncSession, *, principal: ProviderPrincipal, provider_type: str
) -> User | None:
    # The provider uid is authoritative; email is the cross-provider join key.
    user = await get_user_by_provider_uid(
        session, provider_type=provider_type, provider_uid=principal.uid
    )
    if user is None and principal.email:
        user = await get_user_by_email(session, principal.email)
    return user


async def _provision_user(
    session: AsyncSession, *, principal: ProviderPrincipal, provider_type: str
) -> User:
    # Create the user, its primary mapping and role profile in one flush.
    now = utc_now()
    role = _jit_role(principal.role)
    source, platform = signup_source(provider_type)
    user = User(
        email=normalize_email(principal.email),
        first_name=principal.first_name or None,
        last_name=principal.last_name or None,
        phone_number=principal.phone_number,
        role=role,
        account_status="active",
        current_auth_provider=provider_type,
        auth_provider_id=principal.uid,
        auth_provider_type=provider_type,
        signup_source=source,
        signup_platform=platform,
        is_verified=principal.email_verified,
        email_verified=principal.email_verified,
        verified_at=now if principal.email_verified else None,
        login_count=1,
        last_login_at=now,
    )
    session.add(user)
    await session.flush()
    session.add(
        ProviderMapping(
            user_id=user.id,
            provider_type=provider_type,
            provider_uid=principal.uid,
            provider_email=principal.email,
            is_primary=True,
            last_used_at=now,
        )
    )
    if role == "client":
        session.add(ClientProfile(user_id=user.id, status="active"))
    await session.flush()
    return user


async def _ensure_mapping(
    session: AsyncSession, *, user: User, principal: ProviderPrincipal, provider_type: str
) -> None:
    # First login through a second provider adds a non-primary mapping.
    now = utc_now()
    mapping = await get_mapping(session, user_id=user.id, provider_type=provider_type)
    if mapping is None:
        existing = await list_mappings(session, user.id)
        session.add(
            ProviderMapping(
                user_id=user.id,
                provider_type=provider_type,
                provider_uid=principal.uid,
                provider_email=principal.email,
                is_primary=not existing,
                last_used_at=now,
            )
        )
        logger.info(
            "provider_mapping_created user_id=%s provider=%s primary=%s",
            user.id,
            provider_type,
            not existing,
        )
        await session.flush()
        return
    if mapping.provider_uid != principal.uid:
        # The provider account was recreated under the same email.
        logger.warning(
            "provider_uid_changed user_id=%s provider=%s", user.id, provider_type
        )
        mapping.provider_uid = principal.uid
    mapping.provider_email = principal.email or mapping.provider_email
    mapping.last_used_at = now


async def _record_login(
    session: AsyncSession, *, user: User, principal: ProviderPrincipal, provider_type: str
) -> None:
    now = utc_now()
    if user.current_auth_provider != provider_type:
        logger.info(
            "auth_provider_migrated user_id=%s from=%s to=%s",
            user.id,
            user.current_auth_provider,
            provider_type,
        )
        user.current_auth_provider = provider_type
    user.login_count = (user.login_count or 0) + 1
    user.last_login_at = now
    if principal.email_verified and not user.email_verified:
        user.email_verified = True
    if user.account_status == "pending_verification" and principal.email_verified:
        # The provider already confirmed the principal out of band.
        user.account_status = "active"
        user.is_verified = True
        user.verified_at = user.verified_at or now
    await _ensure_mapping(session, user=user, principal=principal, provider_type=provider_type)


async def reconcile_identity(
    *,
    session: AsyncSession,
    principal: ProviderPrincipal,
    provider_type: str,
) -> tuple[User, bool]:
    """Map a provider-verified principal onto a local user, creating one if absent.

    Returns the user and whether it was just provisioned. The caller's session
    must not hold uncommitted work: a lost provisioning race rolls it back and
    reloads the winner's row.
    """
    user = await _find_user(session, principal=principal, provider_type=provider_type)
    if user is None:
        if not (principal.email or "").strip():
            # Email is the cross-provider join key; phone-only principals cannot be provisioned.
            raise ValidationError(
                "Provider account has no email address", details={"provider": provider_type}
            )
        try:
            user = await _provision_user(session, principal=principal, provider_type=provider_type)
            await session.commit()
            logger.info("user_jit_provisioned user_id=%s provider=%s", user.id, provider_type)
            return user, True
        except IntegrityError:
            # A concurrent first login created the user; rollback and reload.
            await session.rollback()
        user = await _find_user(session, principal=principal, provider_type=provider_type)
        if user is None:
            raise DatabaseError("user provisioning failed unexpectedly")

    if is_login_blocked(user):
        # Leave disabled and anonymized rows untouched; ensure_login_allowed rejects them.
        return user, False
    try:
        await _record_login(session, user=user, principal=principal, provider_type=provider_type)
        await session.commit()
    except IntegrityError:
        # The mapping was inserted concurrently; the winner's row is equivalent.
        await session.rollback()
        user = await _find_user(session, principal=principal, provider_type=provider_type)
        if user is None:
            raise DatabaseError("user reconciliation failed unexpectedly")
    return user, False


def is_login_blocked(user: User) -> bool:
    return bool(user.is_anonymized) or user.account_status in _BLOCKED_STATUSES


def ensure_login_allowed(user: User) -> None:
    # Disabled or anonymized accounts cannot sign in even with valid credentials.
    if is_login_blocked(user):
        raise ForbiddenError("Account is disabled", details={"account_status": user.account_status})
