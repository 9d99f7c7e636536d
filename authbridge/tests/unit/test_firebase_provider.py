from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import time
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
import httpx
import jwt
import pytest

from authbridge.core.errors import (
    ProviderAlreadyExistsError,
    ProviderInvalidCodeError,
    ProviderInvalidCredentialsError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderUnknownError,
)
from authbridge.providers.identity.base import SignUpAttributes
from authbridge.providers.identity.firebase import (
    SECURETOKEN_CERTS_URL,
    FirebaseIdentityProvider,
    firebase_error_code,
    map_firebase_error,
)


PROJECT_ID = "demo-project"
ISSUER = f"https://securetoken.google.com/{PROJECT_ID}"


def _self_signed_cert(private_key: rsa.RSAPrivateKey) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "securetoken")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


class _FirebaseBackend:
    """Routes httpx requests the way Google's endpoints would answer them."""

    def __init__(self) -> None:
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.certs = {"kid-1": _self_signed_cert(self.private_key)}
        self.routes: dict[str, httpx.Response] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        if url == SECURETOKEN_CERTS_URL:
            return httpx.Response(200, json=self.certs)
        endpoint = url.rsplit("/", 1)[-1]
        if endpoint in self.routes:
            return self.routes[endpoint]
        return httpx.Response(404, json={"error": {"message": "NOT_ROUTED"}})

    def token(self, **overrides: Any) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": PROJECT_ID,
            "sub": "fb-uid",
            "user_id": "fb-uid",
            "email": "person@example.com",
            "email_verified": True,
            "name": "Pat Doe",
            "role": "therapist",
            "iat": now,
            "exp": now + 600,
        }
        claims.update(overrides)
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers={"kid": "kid-1"})

    def endpoints(self) -> list[str]:
        return [str(item.url).split("?")[0].rsplit("/", 1)[-1] for item in self.requests]


@pytest.fixture
def backend() -> _FirebaseBackend:
    return _FirebaseBackend()


def _provider(backend: _FirebaseBackend, **overrides: Any) -> FirebaseIdentityProvider:
    options: dict[str, Any] = {"project_id": PROJECT_ID, "api_key": "api-key"}
    options.update(overrides)
    return FirebaseIdentityProvider(
        **options, client=httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    )


def test_error_codes_are_parsed_from_rest_bodies() -> None:
    assert firebase_error_code({"error": {"message": "EMAIL_NOT_FOUND : no such user"}}) == "EMAIL_NOT_FOUND"
    assert firebase_error_code({"error": {"message": "TOO_MANY_ATTEMPTS_TRY_LATER extra"}}) == (
        "TOO_MANY_ATTEMPTS_TRY_LATER"
    )
    assert firebase_error_code("not a dict") == ""
    assert isinstance(map_firebase_error(400, {"error": {"message": "EMAIL_EXISTS"}}), ProviderAlreadyExistsError)
    assert isinstance(map_firebase_error(400, {"error": {"message": "USER_NOT_FOUND"}}), ProviderNotFoundError)
    assert isinstance(map_firebase_error(429, {}), ProviderRateLimitedError)
    assert type(map_firebase_error(500, {})) is ProviderUnknownError


@pytest.mark.asyncio
async def test_verify_token_with_google_certs(backend: _FirebaseBackend) -> None:
    provider = _provider(backend)
    principal = await provider.verify_token(backend.token())
    assert principal.uid == "fb-uid"
    assert principal.first_name == "Pat"
    assert principal.last_name == "Doe"
    assert principal.role == "therapist"
    assert principal.email_verified is True


@pytest.mark.asyncio
async def test_verify_rejects_foreign_audience_and_expired(backend: _FirebaseBackend) -> None:
    provider = _provider(backend)
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token(backend.token(aud="other-project"))
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token(backend.token(exp=int(time.time()) - 3600))
    unsigned = jwt.encode({"sub": "x"}, "secret-secret-secret-secret-1234", algorithm="HS256")
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token(unsigned)


@pytest.mark.asyncio
async def test_sign_in_maps_rest_errors(backend: _FirebaseBackend) -> None:
    backend.routes["accounts:signInWithPassword"] = httpx.Response(
        400, json={"error": {"message": "INVALID_LOGIN_CREDENTIALS"}}
    )
    provider = _provider(backend)
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.sign_in("person@example.com", "bad")


@pytest.mark.asyncio
async def test_sign_in_returns_principal_and_tokens(backend: _FirebaseBackend) -> None:
    id_token = backend.token()
    backend.routes["accounts:signInWithPassword"] = httpx.Response(
        200, json={"idToken": id_token, "refreshToken": "fb-refresh", "expiresIn": "3600"}
    )
    provider = _provider(backend)
    result = await provider.sign_in("person@example.com", "pw")
    assert result.principal.email == "person@example.com"
    assert result.tokens.refresh_token == "fb-refresh"
    assert result.tokens.expires_in == 3600
    sign_in_request = backend.requests[0]
    assert sign_in_request.url.params["key"] == "api-key"
    assert json.loads(sign_in_request.content)["returnSecureToken"] is True


@pytest.mark.asyncio
async def test_sign_up_without_admin_credentials_skips_claims(backend: _FirebaseBackend) -> None:
    backend.routes["accounts:signUp"] = httpx.Response(200, json={"localId": "new-uid", "idToken": "id"})
    backend.routes["accounts:sendOobCode"] = httpx.Response(200, json={"email": "person@example.com"})
    provider = _provider(backend)
    uid = await provider.sign_up("person@example.com", "pw", SignUpAttributes("Pat", "Doe", "client"))
    assert uid == "new-uid"
    assert backend.endpoints() == ["accounts:signUp", "accounts:sendOobCode"]


@pytest.mark.asyncio
async def test_confirm_rejects_code_for_another_account(backend: _FirebaseBackend) -> None:
    backend.routes["accounts:update"] = httpx.Response(200, json={"email": "someone@example.com"})
    provider = _provider(backend)
    with pytest.raises(ProviderInvalidCodeError):
        await provider.confirm_sign_up("person@example.com", "oob")


@pytest.mark.asyncio
async def test_network_failure_is_unknown_provider_error() -> None:
    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    provider = FirebaseIdentityProvider(
        project_id=PROJECT_ID,
        api_key="api-key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(broken)),
    )
    with pytest.raises(ProviderUnknownError):
        await provider.forgot_password("person@example.com")
