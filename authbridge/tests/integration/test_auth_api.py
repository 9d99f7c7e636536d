from __future__ import annotations

import asyncio

from httpx import AsyncClient
import pytest
from sqlalchemy import select

from authbridge.core.config import PROVIDER_COGNITO, PROVIDER_FIREBASE
from authbridge.domain.models import ProviderMapping, User
from authbridge.persistence.db import SessionLocal
from authbridge.tests.utils.auth import (
    DEFAULT_PASSWORD,
    api_client,
    auth_headers,
    build_test_app,
    create_test_user,
    fake_provider,
    fake_providers,
    get_user_row,
    login_via_api,
)


@pytest.mark.asyncio
async def test_register_confirm_then_login() -> None:
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        registered = await client.post(
            "/v1/auth/register",
            json={
                "email": "Alice@Example.com",
                "password": DEFAULT_PASSWORD,
                "firstName": "Alice",
                "lastName": "Smith",
                "role": "client",
            },
        )
        assert registered.status_code == 201
        body = registered.json()["data"]
        assert body["requiresVerification"] is True
        assert body["provider"] == PROVIDER_COGNITO
        assert body["user"]["accountStatus"] == "pending_verification"

        # Before confirmation the provider refuses the password login.
        pending = await client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": DEFAULT_PASSWORD}
        )
        assert pending.status_code == 403
        assert pending.json()["error"]["code"] == "AUTH_NOT_CONFIRMED"

        code = fake_provider(providers, PROVIDER_COGNITO).last_code("alice@example.com", "confirm")
        confirmed = await client.post("/v1/auth/confirm", json={"email": "alice@example.com", "code": code})
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["user"]["accountStatus"] == "active"

        data = await login_via_api(client, email="alice@example.com")
    assert data["requiresMFA"] is False
    assert data["tokens"]["tokenType"] == "Bearer"
    assert data["tokens"]["refreshToken"]
    assert data["user"]["email"] == "alice@example.com"
    assert data["user"]["currentProvider"] == PROVIDER_COGNITO
    assert data["isNewUser"] is False


@pytest.mark.asyncio
async def test_duplicate_registration_is_conflict() -> None:
    app = build_test_app(fake_providers())
    await create_test_user(email="taken@example.com")
    payload = {"email": "taken@example.com", "password": DEFAULT_PASSWORD, "firstName": "T", "lastName": "U"}
    async with api_client(app) as client:
        response = await client.post("/v1/auth/register", json=payload)
        available = await client.post("/v1/auth/check-duplicate", json={"email": "free@example.com"})
    assert response.status_code == 409
    assert response.json()["error"]["details"] == {"field": "email"}
    assert available.json()["data"] == {"available": True}


@pytest.mark.asyncio
async def test_versioned_envelope_and_unversioned_alias() -> None:
    providers = fake_providers()
    fake_provider(providers, PROVIDER_COGNITO).add_account("env@example.com", DEFAULT_PASSWORD)
    await create_test_user(email="env@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        versioned = await client.post(
            "/v1/auth/login",
            json={"email": "env@example.com", "password": DEFAULT_PASSWORD},
            headers={"X-Request-Id": "req-123"},
        )
        bare = await client.post("/auth/login", json={"email": "env@example.com", "password": DEFAULT_PASSWORD})
        failed = await client.post("/v1/auth/login", json={"email": "env@example.com", "password": "wrong"})
        bare_failed = await client.post("/auth/login", json={"email": "env@example.com", "password": "wrong"})

    assert versioned.status_code == 200
    assert versioned.headers["X-Request-Id"] == "req-123"
    assert versioned.json()["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert "requiresMFA" in versioned.json()["data"]

    assert bare.status_code == 200
    assert "data" not in bare.json()
    assert bare.json()["requiresMFA"] is False

    assert failed.status_code == 401
    assert failed.headers["WWW-Authenticate"] == "Bearer"
    assert failed.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert bare_failed.json()["detail"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_login_requires_credentials() -> None:
    app = build_test_app(fake_providers())
    async with api_client(app) as client:
        response = await client.post("/v1/auth/login", json={"email": "x@example.com"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_refresh_rotation_and_replay_detection() -> None:
    providers = fake_providers()
    fake_provider(providers, PROVIDER_COGNITO).add_account("rotate@example.com", DEFAULT_PASSWORD)
    await create_test_user(email="rotate@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        data = await login_via_api(client, email="rotate@example.com")
        r1 = data["tokens"]["refreshToken"]

        rotated = await client.post("/v1/auth/refresh", json={"refreshToken": r1})
        assert rotated.status_code == 200
        r2 = rotated.json()["data"]["tokens"]["refreshToken"]
        access = rotated.json()["data"]["tokens"]["accessToken"]
        assert rotated.json()["data"]["sessionId"] == data["sessionId"]

        replay = await client.post("/v1/auth/refresh", json={"refreshToken": r1})
        assert replay.status_code == 403
        assert replay.json()["error"]["code"] == "TOKEN_REUSE_DETECTED"

        # The legitimate holder is signed out as well.
        after = await client.post("/v1/auth/refresh", json={"refreshToken": r2})
        assert after.status_code == 403
        me = await client.get("/v1/auth/me", headers=auth_headers(access))
        assert me.status_code == 401


@pytest.mark.asyncio
async def test_concurrent_refresh_has_one_winner() -> None:
    providers = fake_providers()
    fake_provider(providers, PROVIDER_COGNITO).add_account("pair@example.com", DEFAULT_PASSWORD)
    await create_test_user(email="pair@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        data = await login_via_api(client, email="pair@example.com")
        r1 = data["tokens"]["refreshToken"]
        first, second = await asyncio.gather(
            client.post("/v1/auth/refresh", json={"refreshToken": r1}),
            client.post("/v1/auth/refresh", json={"refreshToken": r1}),
        )
    assert sorted([first.status_code, second.status_code]) == [200, 403]


@pytest.mark.asyncio
async def test_lockout_after_repeated_failures() -> None:
    providers = fake_providers()
    fake_provider(providers, PROVIDER_COGNITO).add_account("lock@example.com", DEFAULT_PASSWORD)
    await create_test_user(email="lock@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        for _ in range(5):
            response = await client.post("/v1/auth/login", json={"email": "lock@example.com", "password": "nope"})
            assert response.status_code == 401
        # Even the right password is refused while the lock holds.
        locked = await client.post(
            "/v1/auth/login", json={"email": "lock@example.com", "password": DEFAULT_PASSWORD}
        )
    assert locked.status_code == 423
    assert locked.json()["error"]["code"] == "ACCOUNT_LOCKED"
    assert "locked_until" in locked.json()["error"]["details"]
    assert int(locked.headers["Retry-After"]) > 0


@pytest.mark.asyncio
async def test_password_login_falls_back_to_secondary_provider() -> None:
    # Mid-migration: the local user points at Cognito but the principal lives on Firebase.
    providers = fake_providers(primary=PROVIDER_COGNITO)
    firebase = fake_provider(providers, PROVIDER_FIREBASE)
    firebase.add_account("migrated@example.com", DEFAULT_PASSWORD, uid="fb-migrated")
    user_id = await create_test_user(email="migrated@example.com", provider_type=PROVIDER_COGNITO)
    app = build_test_app(providers)
    async with api_client(app) as client:
        data = await login_via_api(client, email="migrated@example.com")
    assert data["user"]["id"] == user_id
    assert data["user"]["currentProvider"] == PROVIDER_FIREBASE
    assert "sign_in" in fake_provider(providers, PROVIDER_COGNITO).calls
    assert (await get_user_row(user_id)).current_auth_provider == PROVIDER_FIREBASE
    async with SessionLocal() as session:
        mappings = (
            await session.execute(select(ProviderMapping).where(ProviderMapping.user_id == user_id))
        ).scalars().all()
    assert {item.provider_type for item in mappings} == {PROVIDER_COGNITO, PROVIDER_FIREBASE}


@pytest.mark.asyncio
async def test_provider_token_login_provisions_new_user() -> None:
    providers = fake_providers(primary=PROVIDER_COGNITO)
    firebase = fake_provider(providers, PROVIDER_FIREBASE)
    firebase.add_account("web@example.com", DEFAULT_PASSWORD, role="therapist")
    token = firebase.issue_id_token("web@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        data = await login_via_api(client, email=None, password=None, idToken=token)
        again = await login_via_api(client, email=None, password=None, idToken=token)
    assert data["isNewUser"] is True
    assert again["isNewUser"] is False
    assert data["user"]["role"] == "therapist"
    assert data["user"]["currentProvider"] == PROVIDER_FIREBASE
    async with SessionLocal() as session:
        users = (await session.execute(select(User))).scalars().all()
    assert [item.signup_source for item in users] == ["web_app"]


@pytest.mark.asyncio
async def test_me_and_logout() -> None:
    providers = fake_providers()
    fake_provider(providers, PROVIDER_COGNITO).add_account("me@example.com", DEFAULT_PASSWORD)
    await create_test_user(email="me@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        data = await login_via_api(client, email="me@example.com")
        headers = auth_headers(data["tokens"]["accessToken"])
        me = await client.get("/v1/auth/me", headers=headers)
        logout = await client.post("/v1/auth/logout", json={}, headers=headers)
        after = await client.get("/v1/auth/me", headers=headers)
        refresh = await client.post("/v1/auth/refresh", json={"refreshToken": data["tokens"]["refreshToken"]})
    assert me.status_code == 200
    assert me.json()["data"]["sessionId"] == data["sessionId"]
    assert me.json()["data"]["user"]["email"] == "me@example.com"
    assert logout.status_code == 200
    assert logout.json()["data"]["loggedOut"] is True
    assert after.status_code == 401
    assert refresh.status_code in (401, 403)


async def _login_from(client: AsyncClient, email: str, ip_address: str) -> dict:
    response = await client.post(
        "/v1/auth/login",
        json={"email": email, "password": DEFAULT_PASSWORD},
        headers={"X-Forwarded-For": ip_address},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]["suspiciousActivity"]


@pytest.mark.asyncio
async def test_many_source_ips_are_flagged_without_blocking() -> None:
    providers = fake_providers()
    fake_provider(providers, PROVIDER_COGNITO).add_account("roam@example.com", DEFAULT_PASSWORD)
    await create_test_user(email="roam@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        flags = [await _login_from(client, "roam@example.com", f"10.0.0.{n}") for n in range(1, 5)]
    assert flags[0]["reasons"] == []
    assert flags[1]["reasons"] == ["new_device"]
    assert "multiple_ips" not in flags[2]["reasons"]
    assert flags[3]["suspicious"] is True
    assert set(flags[3]["reasons"]) == {"multiple_ips", "new_device"}


@pytest.mark.asyncio
async def test_login_burst_is_flagged_without_blocking() -> None:
    providers = fake_providers()
    fake_provider(providers, PROVIDER_COGNITO).add_account("burst@example.com", DEFAULT_PASSWORD)
    await create_test_user(email="burst@example.com")
    app = build_test_app(providers)
    async with api_client(app) as client:
        flags = [await _login_from(client, "burst@example.com", "10.1.1.1") for _ in range(11)]
    assert all("login_burst" not in item["reasons"] for item in flags[:10])
    assert flags[10]["reasons"] == ["login_burst"]
