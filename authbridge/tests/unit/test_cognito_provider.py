from __future__ import annotations

import json
import time
from typing import Any

from botocore.exceptions import ClientError
from cryptography.hazmat.primitives.asymmetric import rsa
import httpx
import jwt
import pytest

from authbridge.core.errors import (
    ProviderAlreadyExistsError,
    ProviderConfigError,
    ProviderInvalidCodeError,
    ProviderInvalidCredentialsError,
    ProviderNotConfirmedError,
    ProviderRateLimitedError,
    ProviderUnknownError,
)
from authbridge.providers.identity.base import SignUpAttributes
from authbridge.providers.identity.cognito import CognitoIdentityProvider, map_cognito_error


REGION = "eu-west-1"
POOL_ID = "eu-west-1_pool"
CLIENT_ID = "client-123"
ISSUER = f"https://cognito-idp.{REGION}.amazonaws.com/{POOL_ID}"


def _client_error(code: str, operation: str = "InitiateAuth") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _StubCognitoClient:
    """Stands in for the boto3 cognito-idp client."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, Any] = {}

    def _respond(self, operation: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((operation, kwargs))
        outcome = self.responses.get(operation, {})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def sign_up(self, **kwargs: Any) -> dict[str, Any]:
        return self._respond("sign_up", kwargs)

    def initiate_auth(self, **kwargs: Any) -> dict[str, Any]:
        return self._respond("initiate_auth", kwargs)

    def confirm_sign_up(self, **kwargs: Any) -> dict[str, Any]:
        return self._respond("confirm_sign_up", kwargs)


class _Keys:
    def __init__(self) -> None:
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update({"kid": "kid-1", "alg": "RS256", "use": "sig"})
        self.jwks = {"keys": [jwk]}
        self.fetches = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.fetches += 1
        assert request.url.path.endswith("/.well-known/jwks.json")
        return httpx.Response(200, json=self.jwks)

    def token(self, **overrides: Any) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "cognito-sub",
            "token_use": "id",
            "email": "person@example.com",
            "email_verified": "true",
            "given_name": "Pat",
            "family_name": "Doe",
            "custom:role": "therapist",
            "iat": now,
            "exp": now + 600,
        }
        claims.update(overrides)
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers={"kid": "kid-1"})


@pytest.fixture
def keys() -> _Keys:
    return _Keys()


def _provider(keys: _Keys, client: _StubCognitoClient | None = None, **overrides: Any) -> CognitoIdentityProvider:
    options = {"region": REGION, "user_pool_id": POOL_ID, "client_id": CLIENT_ID}
    options.update(overrides)
    return CognitoIdentityProvider(
        **options,
        client=client or _StubCognitoClient(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(keys.handler)),
    )


def test_error_codes_map_to_normalized_kinds() -> None:
    assert isinstance(map_cognito_error(_client_error("NotAuthorizedException")), ProviderInvalidCredentialsError)
    assert isinstance(map_cognito_error(_client_error("UserNotConfirmedException")), ProviderNotConfirmedError)
    assert isinstance(map_cognito_error(_client_error("UsernameExistsException")), ProviderAlreadyExistsError)
    assert isinstance(map_cognito_error(_client_error("ExpiredCodeException")), ProviderInvalidCodeError)
    assert isinstance(map_cognito_error(_client_error("TooManyRequestsException")), ProviderRateLimitedError)
    unknown = map_cognito_error(_client_error("InternalErrorException"))
    assert type(unknown) is ProviderUnknownError
    assert unknown.provider == "cognito"


@pytest.mark.asyncio
async def test_verify_id_token_builds_principal(keys: _Keys) -> None:
    provider = _provider(keys)
    principal = await provider.verify_token(keys.token())
    assert principal.uid == "cognito-sub"
    assert principal.email == "person@example.com"
    assert principal.email_verified is True
    assert principal.role == "therapist"
    assert principal.display_name == "Pat Doe"
    # The JWKS document is cached across verifications.
    await provider.verify_token(keys.token())
    assert keys.fetches == 1


@pytest.mark.asyncio
async def test_verify_rejects_wrong_audience_and_issuer(keys: _Keys) -> None:
    provider = _provider(keys)
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token(keys.token(aud="someone-else"))
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token(keys.token(iss="https://cognito-idp.us-east-1.amazonaws.com/other"))
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token(keys.token(exp=int(time.time()) - 3600))
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token("garbage")


@pytest.mark.asyncio
async def test_access_token_audience_comes_from_client_id(keys: _Keys) -> None:
    provider = _provider(keys)
    token = keys.token(token_use="access", aud=None, client_id=CLIENT_ID)
    principal = await provider.verify_token(token)
    assert principal.uid == "cognito-sub"


@pytest.mark.asyncio
async def test_unknown_kid_refetches_once(keys: _Keys) -> None:
    provider = _provider(keys)
    token = jwt.encode(
        {"iss": ISSUER, "aud": CLIENT_ID, "sub": "x", "token_use": "id"},
        keys.private_key,
        algorithm="RS256",
        headers={"kid": "rotated"},
    )
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.verify_token(token)
    assert keys.fetches == 2


@pytest.mark.asyncio
async def test_sign_in_returns_tokens_and_principal(keys: _Keys) -> None:
    client = _StubCognitoClient()
    id_token = keys.token()
    client.responses["initiate_auth"] = {
        "AuthenticationResult": {
            "IdToken": id_token,
            "AccessToken": "access",
            "RefreshToken": "refresh",
            "ExpiresIn": 900,
        }
    }
    provider = _provider(keys, client)
    result = await provider.sign_in("person@example.com", "pw")
    assert result.principal.email == "person@example.com"
    assert result.tokens.refresh_token == "refresh"
    assert result.tokens.expires_in == 900
    operation, kwargs = client.calls[0]
    assert operation == "initiate_auth"
    assert kwargs["AuthFlow"] == "USER_PASSWORD_AUTH"
    assert kwargs["ClientId"] == CLIENT_ID


@pytest.mark.asyncio
async def test_sdk_errors_surface_as_provider_errors(keys: _Keys) -> None:
    client = _StubCognitoClient()
    client.responses["initiate_auth"] = _client_error("NotAuthorizedException")
    client.responses["sign_up"] = _client_error("UsernameExistsException", "SignUp")
    provider = _provider(keys, client)
    with pytest.raises(ProviderInvalidCredentialsError):
        await provider.sign_in("person@example.com", "bad")
    with pytest.raises(ProviderAlreadyExistsError):
        await provider.sign_up("person@example.com", "pw", SignUpAttributes("Pat", "Doe", "client"))


@pytest.mark.asyncio
async def test_challenge_without_tokens_is_unknown_error(keys: _Keys) -> None:
    client = _StubCognitoClient()
    client.responses["initiate_auth"] = {"ChallengeName": "NEW_PASSWORD_REQUIRED"}
    provider = _provider(keys, client)
    with pytest.raises(ProviderUnknownError):
        await provider.sign_in("person@example.com", "pw")


@pytest.mark.asyncio
async def test_sign_up_sends_formatted_phone(keys: _Keys) -> None:
    client = _StubCognitoClient()
    client.responses["sign_up"] = {"UserSub": "new-sub"}
    provider = _provider(keys, client)
    uid = await provider.sign_up(
        "person@example.com",
        "pw",
        SignUpAttributes("Pat", "Doe", "client", phone_number="5551234567", country_code="+1"),
    )
    assert uid == "new-sub"
    attributes = {item["Name"]: item["Value"] for item in client.calls[0][1]["UserAttributes"]}
    assert attributes["phone_number"] == "+15551234567"
    assert attributes["custom:role"] == "client"


@pytest.mark.asyncio
async def test_unconfigured_provider_is_unavailable(keys: _Keys) -> None:
    provider = _provider(keys, user_pool_id=None)
    assert provider.is_available() is False
    with pytest.raises(ProviderConfigError):
        await provider.confirm_sign_up("person@example.com", "123456")
