from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from authbridge.core.config import PROVIDER_COGNITO, PROVIDER_FIREBASE
from authbridge.core.errors import ForbiddenError, ValidationError
from authbridge.domain.models import ClientProfile, ProviderMapping, User
from authbridge.persistence.db import SessionLocal
from authbridge.providers.identity.base import ProviderPrincipal
from authbridge.services.auth.reconciliation import ensure_login_allowed, reconcile_identity
from authbridge.tests.utils.auth import create_test_user


def _principal(
    *,
    uid: str = "uid-1",
    email: str = "jit@example.com",
    provider_type: str = PROVIDER_FIREBASE,
    role: str = "therapist",
    verified: bool = True,
) -> ProviderPrincipal:
    return ProviderPrincipal(
        uid=uid,
        email=email,
        provider_type=provider_type,
        first_name="Jit",
        last_name="User",
        role=role,
        email_verified=verified,
        phone_number=None,
        claims={},
    )


@pytest.mark.asyncio
async def test_first_login_provisions_user_with_primary_mapping() -> None:
    async with SessionLocal() as session:
        user, created = await reconcile_identity(
            session=session, principal=_principal(), provider_type=PROVIDER_FIREBASE
        )
    assert created is True
    assert user.account_status == "active"
    assert user.current_auth_provider == PROVIDER_FIREBASE
    assert user.signup_source == "web_app"
    assert user.role == "therapist"
    async with SessionLocal() as session:
        mappings = (await session.execute(select(ProviderMapping))).scalars().all()
    assert [(item.provider_type, item.provider_uid, item.is_primary) for item in mappings] == [
        (PROVIDER_FIREBASE, "uid-1", True)
    ]


@pytest.mark.asyncio
async def test_untrusted_role_hint_falls_back_to_client() -> None:
    async with SessionLocal() as session:
        user, _ = await reconcile_identity(
            session=session, principal=_principal(role="superadmin"), provider_type=PROVIDER_FIREBASE
        )
        profiles = (await session.execute(select(func.count(ClientProfile.id)))).scalar_one()
    assert user.role == "client"
    assert profiles == 1


@pytest.mark.asyncio
async def test_login_through_second_provider_adds_mapping_and_migrates() -> None:
    # An existing Cognito user signs in through Firebase with the same email.
    user_id = await create_test_user(email="mover@example.com", provider_type=PROVIDER_COGNITO)
    async with SessionLocal() as session:
        user, created = await reconcile_identity(
            session=session,
            principal=_principal(uid="fb-uid", email="Mover@example.com"),
            provider_type=PROVIDER_FIREBASE,
        )
    assert created is False
    assert user.id == user_id
    assert user.current_auth_provider == PROVIDER_FIREBASE
    assert user.login_count == 1
    async with SessionLocal() as session:
        mappings = {
            item.provider_type: item
            for item in (await session.execute(select(ProviderMapping))).scalars().all()
        }
    assert mappings[PROVIDER_COGNITO].is_primary is True
    assert mappings[PROVIDER_FIREBASE].is_primary is False
    assert mappings[PROVIDER_FIREBASE].provider_uid == "fb-uid"


@pytest.mark.asyncio
async def test_concurrent_first_logins_create_one_user() -> None:
    # Two first logins race; the unique constraints leave exactly one row.
    async def attempt() -> tuple[User, bool]:
        async with SessionLocal() as session:
            return await reconcile_identity(
                session=session, principal=_principal(uid="race-uid"), provider_type=PROVIDER_FIREBASE
            )

    results = await asyncio.gather(attempt(), attempt())
    assert {user.id for user, _ in results} == {results[0][0].id}
    assert sorted(created for _, created in results) == [False, True]
    async with SessionLocal() as session:
        users = (await session.execute(select(func.count(User.id)))).scalar_one()
        mappings = (await session.execute(select(func.count(ProviderMapping.id)))).scalar_one()
    assert users == 1
    assert mappings == 1


@pytest.mark.asyncio
async def test_pending_user_is_activated_by_verified_principal() -> None:
    await create_test_user(email="pending@example.com", account_status="pending_verification")
    async with SessionLocal() as session:
        user, _ = await reconcile_identity(
            session=session,
            principal=_principal(uid="uid-pending@example.com", email="pending@example.com", provider_type=PROVIDER_COGNITO),
            provider_type=PROVIDER_COGNITO,
        )
    assert user.account_status == "active"
    assert user.is_verified is True


@pytest.mark.asyncio
async def test_disabled_accounts_cannot_log_in() -> None:
    user_id = await create_test_user(email="suspended@example.com", account_status="suspended")
    async with SessionLocal() as session:
        user = await session.get(User, user_id)
    with pytest.raises(ForbiddenError):
        ensure_login_allowed(user)


@pytest.mark.asyncio
async def test_reconcile_leaves_blocked_accounts_untouched() -> None:
    user_id = await create_test_user(email="frozen@example.com", account_status="suspended")
    async with SessionLocal() as session:
        user, created = await reconcile_identity(
            session=session,
            principal=_principal(uid="fb-frozen", email="frozen@example.com"),
            provider_type=PROVIDER_FIREBASE,
        )
        mappings = (
            await session.execute(select(ProviderMapping).where(ProviderMapping.user_id == user_id))
        ).scalars().all()
    assert created is False
    assert user.id == user_id
    assert user.login_count == 0
    assert user.current_auth_provider == PROVIDER_COGNITO
    assert [item.provider_type for item in mappings] == [PROVIDER_COGNITO]


@pytest.mark.asyncio
async def test_principal_without_email_is_not_provisioned() -> None:
    async with SessionLocal() as session:
        for uid in ("phone-a", "phone-b"):
            with pytest.raises(ValidationError):
                await reconcile_identity(
                    session=session,
                    principal=_principal(uid=uid, email=""),
                    provider_type=PROVIDER_FIREBASE,
                )
        users = (await session.execute(select(func.count()).select_from(User))).scalar_one()
    assert users == 0


@pytest.mark.asyncio
async def test_known_uid_without_email_still_reconciles() -> None:
    user_id = await create_test_user(
        email="phone@example.com", provider_type=PROVIDER_FIREBASE, provider_uid="phone-known"
    )
    async with SessionLocal() as session:
        user, created = await reconcile_identity(
            session=session,
            principal=_principal(uid="phone-known", email=""),
            provider_type=PROVIDER_FIREBASE,
        )
    assert created is False
    assert user.id == user_id
    assert user.login_count == 1
