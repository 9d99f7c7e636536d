from __future__ import annotations

from httpx import AsyncClient
import pytest
from sqlalchemy import select

from authbridge.core.config import PROVIDER_COGNITO
from authbridge.domain.models import ProviderMapping
from authbridge.persistence.db import SessionLocal
from authbridge.providers.identity.factory import ProviderContext
from authbridge.tests.utils.auth import (
    DEFAULT_PASSWORD,
    api_client,
    auth_headers,
    build_test_app,
    create_test_user,
    fake_provider,
    fake_providers,
    login_via_api,
    seed_roles,
)


async def _signed_in(
    client: AsyncClient, providers: ProviderContext, email: str, *, role: str = "client", **login_extra
) -> tuple[int, dict]:
    # Seed both sides of an account and return its id with a fresh login payload.
    uid = fake_provider(providers, PROVIDER_COGNITO).add_account(email, DEFAULT_PASSWORD)
    user_id = await create_test_user(email=email, provider_uid=uid, role=role)
    return user_id, await login_via_api(client, email=email, **login_extra)


@pytest.mark.asyncio
async def test_health_reports_providers_and_database() -> None:
    app = build_test_app(fake_providers(firebase_available=False))
    async with api_client(app) as client:
        versioned = await client.get("/v1/health")
        bare = await client.get("/health")
    assert versioned.status_code == 200
    data = versioned.json()["data"]
    assert data["status"] == "ok"
    assert data["database"] == "ok"
    assert "databasePool" in data
    by_provider = {item["provider"]: item for item in data["providers"]}
    assert by_provider["cognito"]["primary"] is True
    assert by_provider["firebase"]["available"] is False
    assert bare.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_health_degrades_without_providers() -> None:
    app = build_test_app(fake_providers(cognito_available=False, firebase_available=False))
    async with api_client(app) as client:
        response = await client.get("/v1/health")
    assert response.json()["data"]["status"] == "degraded"


@pytest.mark.asyncio
async def test_protected_routes_require_bearer_token() -> None:
    app = build_test_app(fake_providers())
    async with api_client(app) as client:
        missing = await client.get("/v1/auth/sessions/active")
        garbage = await client.get("/v1/auth/sessions/active", headers=auth_headers("nope"))
        malformed = await client.get("/v1/auth/me", headers={"Authorization": "Token abc"})
    assert missing.status_code == 401
    assert garbage.status_code == 401
    assert malformed.status_code == 401


@pytest.mark.asyncio
async def test_sessions_listing_and_sign_out_elsewhere() -> None:
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        _, phone = await _signed_in(client, providers, "multi@example.com", deviceInfo={"platform": "ios"})
        laptop = await login_via_api(client, email="multi@example.com", rememberMe=True)
        headers = auth_headers(laptop["tokens"]["accessToken"])

        listed = await client.get("/v1/auth/sessions/active", headers=headers)
        body = listed.json()["data"]
        assert body["total"] == 2
        current = [item for item in body["sessions"] if item["isCurrent"]]
        assert [item["sessionId"] for item in current] == [laptop["sessionId"]]
        assert current[0]["rememberMe"] is True

        ended = await client.post("/v1/auth/sessions/invalidate-all", json={}, headers=headers)
        assert ended.json()["data"] == {"sessionsEnded": 1}
        phone_me = await client.get("/v1/auth/me", headers=auth_headers(phone["tokens"]["accessToken"]))
        laptop_me = await client.get("/v1/auth/me", headers=headers)
        analytics = await client.get("/v1/auth/sessions/analytics", params={"days": 7}, headers=headers)
    assert phone_me.status_code == 401
    assert laptop_me.status_code == 200
    assert analytics.json()["data"]["totalSessions"] == 2
    assert analytics.json()["data"]["activeSessions"] == 1
    assert "uniqueIPs" in analytics.json()["data"]


@pytest.mark.asyncio
async def test_active_sessions_can_exclude_the_callers_own() -> None:
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        _, first = await _signed_in(client, providers, "others@example.com")
        second = await login_via_api(client, email="others@example.com")
        headers = auth_headers(second["tokens"]["accessToken"])
        everything = await client.get("/v1/auth/sessions/active", headers=headers)
        others = await client.get(
            "/v1/auth/sessions/active", params={"excludeCurrent": "true"}, headers=headers
        )
        by_id = await client.get(
            "/v1/auth/sessions/active",
            params={"excludeCurrent": "true", "currentSessionId": first["sessionId"]},
            headers=headers,
        )
    assert everything.json()["data"]["total"] == 2
    listed = others.json()["data"]["sessions"]
    assert [item["sessionId"] for item in listed] == [first["sessionId"]]
    assert listed[0]["isCurrent"] is False
    assert [item["sessionId"] for item in by_id.json()["data"]["sessions"]] == [second["sessionId"]]


@pytest.mark.asyncio
async def test_trust_known_device_only() -> None:
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        _, data = await _signed_in(client, providers, "device@example.com")
        headers = auth_headers(data["tokens"]["accessToken"])
        devices = (await client.get("/v1/auth/sessions/devices", headers=headers)).json()["data"]["devices"]
        assert len(devices) == 1
        trusted = await client.post(
            "/v1/auth/sessions/trust-device", json={"deviceHash": devices[0]["deviceHash"]}, headers=headers
        )
        unknown = await client.post(
            "/v1/auth/sessions/trust-device", json={"deviceHash": "f" * 64}, headers=headers
        )
    assert trusted.json()["data"]["isTrusted"] is True
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_other_users_sessions_need_users_manage() -> None:
    await seed_roles()
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        target_id, _ = await _signed_in(client, providers, "target@example.com")
        _, client_login = await _signed_in(client, providers, "peer@example.com")
        _, admin_login = await _signed_in(client, providers, "ops@example.com", role="admin")
        denied = await client.get(
            "/v1/auth/sessions/active",
            params={"userId": target_id},
            headers=auth_headers(client_login["tokens"]["accessToken"]),
        )
        allowed = await client.get(
            "/v1/auth/sessions/active",
            params={"userId": target_id},
            headers=auth_headers(admin_login["tokens"]["accessToken"]),
        )
    assert denied.status_code == 403
    assert denied.json()["error"]["details"] == {"permission": "users:manage"}
    assert allowed.status_code == 200
    assert allowed.json()["data"]["total"] == 1


@pytest.mark.asyncio
async def test_role_assignment_requires_roles_manage() -> None:
    await seed_roles()
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        target_id, client_login = await _signed_in(client, providers, "patient@example.com")
        _, admin_login = await _signed_in(client, providers, "admin@example.com", role="admin")
        assert "roles:manage" in admin_login["user"]["permissions"]
        payload = {"userId": target_id, "roleName": "therapist"}

        denied = await client.post(
            "/v1/auth/roles/assign", json=payload, headers=auth_headers(client_login["tokens"]["accessToken"])
        )
        assigned = await client.post(
            "/v1/auth/roles/assign", json=payload, headers=auth_headers(admin_login["tokens"]["accessToken"])
        )
        revoked = await client.post(
            "/v1/auth/roles/revoke", json=payload, headers=auth_headers(admin_login["tokens"]["accessToken"])
        )
        roles = await client.get("/v1/auth/roles", headers=auth_headers(client_login["tokens"]["accessToken"]))
    assert denied.status_code == 403
    assert assigned.status_code == 200
    assert set(assigned.json()["data"]["roles"]) == {"client", "therapist"}
    assert "appointments:manage" in assigned.json()["data"]["permissions"]
    assert revoked.json()["data"]["roles"] == ["client"]
    assert {item["name"] for item in roles.json()["data"]["roles"]} == {"client", "therapist", "admin", "superadmin"}


@pytest.mark.asyncio
async def test_consent_and_data_request_flow() -> None:
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        _, data = await _signed_in(client, providers, "privacy@example.com")
        headers = auth_headers(data["tokens"]["accessToken"])
        granted = await client.post(
            "/v1/auth/compliance/consent",
            json={"consentType": "privacy_policy", "granted": True, "consentVersion": "2024-01"},
            headers=headers,
        )
        bad = await client.post(
            "/v1/auth/compliance/consent", json={"consentType": "cookies", "granted": True}, headers=headers
        )
        consents = await client.get("/v1/auth/compliance/consents", headers=headers)
        export = await client.post(
            "/v1/auth/compliance/data-export-request", json={"reason": "copy please"}, headers=headers
        )
        requests = await client.get("/v1/auth/compliance/data-requests", headers=headers)
        trail = await client.get(
            "/v1/auth/compliance/audit-trail", params={"action": "consent_granted"}, headers=headers
        )
    assert granted.status_code == 200
    assert granted.json()["data"]["consentVersion"] == "2024-01"
    assert bad.status_code == 400
    assert [item["consentType"] for item in consents.json()["data"]["consents"]] == ["privacy_policy"]
    assert export.status_code == 201
    assert export.json()["data"]["status"] == "pending"
    assert [item["requestId"] for item in requests.json()["data"]["requests"]] == [
        export.json()["data"]["requestId"]
    ]
    entries = trail.json()["data"]["entries"]
    assert [item["action"] for item in entries] == ["consent_granted"]


@pytest.mark.asyncio
async def test_anonymize_requires_compliance_manage() -> None:
    await seed_roles()
    providers = fake_providers()
    app = build_test_app(providers)
    async with api_client(app) as client:
        target_id, target_login = await _signed_in(client, providers, "erase@example.com")
        _, admin_login = await _signed_in(client, providers, "admin2@example.com", role="admin")
        _, root_login = await _signed_in(client, providers, "root@example.com", role="superadmin")
        payload = {"userId": target_id, "reason": "right to erasure"}
        denied = await client.post(
            "/v1/auth/compliance/anonymize", json=payload, headers=auth_headers(admin_login["tokens"]["accessToken"])
        )
        done = await client.post(
            "/v1/auth/compliance/anonymize", json=payload, headers=auth_headers(root_login["tokens"]["accessToken"])
        )
        target_me = await client.get("/v1/auth/me", headers=auth_headers(target_login["tokens"]["accessToken"]))
        relogin = await client.post(
            "/v1/auth/login", json={"email": "erase@example.com", "password": DEFAULT_PASSWORD}
        )
    assert denied.status_code == 403
    assert done.json()["data"] == {"userId": target_id, "anonymized": True}
    assert target_me.status_code == 401
    # The provider account survives; its mapping still leads to the scrubbed row, which is refused.
    assert relogin.status_code == 403
    assert relogin.json()["error"]["code"] == "AUTH_FORBIDDEN"
    async with SessionLocal() as session:
        mapping = (
            await session.execute(select(ProviderMapping).where(ProviderMapping.user_id == target_id))
        ).scalar_one()
    assert mapping.provider_email is None
