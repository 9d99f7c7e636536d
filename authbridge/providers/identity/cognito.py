from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import httpx
import jwt

from authbridge.core.config import PROVIDER_COGNITO, get_settings
from authbridge.core.errors import (
    ProviderAlreadyExistsError,
    ProviderConfigError,
    ProviderError,
    ProviderInvalidCodeError,
    ProviderInvalidCredentialsError,
    ProviderNotConfirmedError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderUnknownError,
)
from authbridge.providers.identity.base import (
    ProviderAuthResult,
    ProviderPrincipal,
    ProviderTokens,
    SignUpAttributes,
    format_phone_number,
)


logger = logging.getLogger(__name__)

_ERROR_MAP: dict[str, type[ProviderError]] = {
    "UserNotFoundException": ProviderNotFoundError,
    "NotAuthorizedException": ProviderInvalidCredentialsError,
    "UserNotConfirmedException": ProviderNotConfirmedError,
    "UsernameExistsException": ProviderAlreadyExistsError,
    "CodeMismatchException": ProviderInvalidCodeError,
    "ExpiredCodeException": ProviderInvalidCodeError,
    "TooManyRequestsException": ProviderRateLimitedError,
    "LimitExceededException": ProviderRateLimitedError,
    "TooManyFailedAttemptsException": ProviderRateLimitedError,
}


def map_cognito_error(exc: ClientError) -> ProviderError:
    # Normalize Cognito error codes so callers never see SDK exception names.
    code = exc.response.get("Error", {}).get("Code", "")
    error_cls = _ERROR_MAP.get(code, ProviderUnknownError)
    if error_cls is ProviderUnknownError:
        logger.warning("cognito_unmapped_error code=%s", code)
    return error_cls(f"Cognito request failed: {code or 'unknown'}", provider=PROVIDER_COGNITO)


class CognitoIdentityProvider:
    provider_type = PROVIDER_COGNITO

    def __init__(
        self,
        *,
        region: str,
        user_pool_id: str | None,
        client_id: str | None,
        client: Any | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = get_settings()
        self._region = region
        self._user_pool_id = user_pool_id
        self._client_id = client_id
        self._client = client
        self._http_client = http_client
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0

    @property
    def issuer(self) -> str:
        return f"https://cognito-idp.{self._region}.amazonaws.com/{self._user_pool_id}"

    def is_available(self) -> bool:
        return bool(self._user_pool_id and self._client_id)

    async def health(self) -> dict[str, Any]:
        return {
            "provider": self.provider_type,
            "available": self.is_available(),
            "configured": self.is_available(),
            "details": {
                "region": self._region,
                "user_pool_id": self._user_pool_id,
                "jwks_cached": self._jwks is not None,
            },
        }

    def _require_config(self) -> str:
        if not self.is_available():
            raise ProviderConfigError("COGNITO_USER_POOL_ID and COGNITO_CLIENT_ID are required")
        return str(self._client_id)

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("cognito-idp", region_name=self._region)
        return self._client

    async def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        # boto3 is blocking; run each call in a worker thread.
        method = getattr(self._get_client(), operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError as exc:
            raise map_cognito_error(exc) from exc
        except BotoCoreError as exc:
            logger.warning("cognito_call_failed operation=%s", operation, exc_info=exc)
            raise ProviderUnknownError("Cognito request failed", provider=self.provider_type) from exc

    async def sign_up(self, email: str, password: str, attributes: SignUpAttributes) -> str:
        client_id = self._require_config()
        user_attributes = [
            {"Name": "email", "Value": email},
            {"Name": "given_name", "Value": attributes.first_name},
            {"Name": "family_name", "Value": attributes.last_name},
            {"Name": "custom:role", "Value": attributes.role},
        ]
        phone = format_phone_number(attributes.phone_number, attributes.country_code)
        if phone:
            user_attributes.append({"Name": "phone_number", "Value": phone})
        response = await self._call(
            "sign_up",
            ClientId=client_id,
            Username=email,
            Password=password,
            UserAttributes=user_attributes,
        )
        return str(response["UserSub"])

    async def sign_in(self, email: str, password: str) -> ProviderAuthResult:
        client_id = self._require_config()
        response = await self._call(
            "initiate_auth",
            ClientId=client_id,
            AuthFlow="USER_PASSWORD_AUTH",
            AuthParameters={"USERNAME": email, "PASSWORD": password},
        )
        return await self._auth_result(response, fallback_refresh=None)

    async def refresh_token(self, refresh_token: str) -> ProviderAuthResult:
        client_id = self._require_config()
        response = await self._call(
            "initiate_auth",
            ClientId=client_id,
            AuthFlow="REFRESH_TOKEN_AUTH",
            AuthParameters={"REFRESH_TOKEN": refresh_token},
        )
        # Cognito does not rotate refresh tokens; keep the presented one.
        return await self._auth_result(response, fallback_refresh=refresh_token)

    async def _auth_result(
        self, response: dict[str, Any], *, fallback_refresh: str | None
    ) -> ProviderAuthResult:
        result = response.get("AuthenticationResult") or {}
        if not result.get("IdToken") or not result.get("AccessToken"):
            # Challenges (NEW_PASSWORD_REQUIRED, custom MFA) are not supported by this flow.
            challenge = response.get("ChallengeName")
            raise ProviderUnknownError(
                f"Cognito returned no tokens (challenge={challenge})", provider=self.provider_type
            )
        principal = await self.verify_token(result["IdToken"])
        tokens = ProviderTokens(
            access_token=result["AccessToken"],
            id_token=result["IdToken"],
            refresh_token=result.get("RefreshToken") or fallback_refresh,
            expires_in=int(result.get("ExpiresIn") or 3600),
        )
        return ProviderAuthResult(principal=principal, tokens=tokens)

    async def confirm_sign_up(self, email: str, code: str) -> None:
        client_id = self._require_config()
        await self._call("confirm_sign_up", ClientId=client_id, Username=email, ConfirmationCode=code)

    async def resend_code(self, email: str) -> None:
        client_id = self._require_config()
        await self._call("resend_confirmation_code", ClientId=client_id, Username=email)

    async def forgot_password(self, email: str) -> None:
        client_id = self._require_config()
        await self._call("forgot_password", ClientId=client_id, Username=email)

    async def confirm_forgot_password(self, email: str, code: str, new_password: str) -> None:
        client_id = self._require_config()
        await self._call(
            "confirm_forgot_password",
            ClientId=client_id,
            Username=email,
            ConfirmationCode=code,
            Password=new_password,
        )

    async def sign_out(self, token: str) -> None:
        # GlobalSignOut invalidates every Cognito refresh token for the principal.
        self._require_config()
        await self._call("global_sign_out", AccessToken=token)

    async def _get_jwks(self, *, force: bool = False) -> dict[str, Any]:
        ttl = self._settings.jwks_cache_ttl_seconds
        if not force and self._jwks is not None and time.monotonic() - self._jwks_fetched_at < ttl:
            return self._jwks
        url = f"{self.issuer}/.well-known/jwks.json"
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url)
            else:
                timeout = self._settings.ext_call_timeout_ms / 1000
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderUnknownError("Cognito JWKS fetch failed", provider=self.provider_type) from exc
        self._jwks = response.json()
        self._jwks_fetched_at = time.monotonic()
        return self._jwks

    async def _signing_key(self, kid: str | None) -> Any:
        jwks = await self._get_jwks()
        for attempt in range(2):
            for key in jwks.get("keys") or []:
                if key.get("kid") == kid:
                    return jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key))
            if attempt == 0:
                # Key rotation: refetch once before giving up.
                jwks = await self._get_jwks(force=True)
        raise ProviderInvalidCredentialsError("Unknown signing key", provider=self.provider_type)

    async def verify_token(self, token: str) -> ProviderPrincipal:
        client_id = self._require_config()
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise ProviderInvalidCredentialsError("Malformed token", provider=self.provider_type) from exc
        if header.get("alg") != "RS256":
            raise ProviderInvalidCredentialsError("Unsupported token algorithm", provider=self.provider_type)
        key = await self._signing_key(header.get("kid"))
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                issuer=self.issuer,
                options={"verify_aud": False},
                leeway=self._settings.provider_clock_skew_seconds,
            )
        except jwt.PyJWTError as exc:
            raise ProviderInvalidCredentialsError("Token verification failed", provider=self.provider_type) from exc
        # ID tokens carry aud; access tokens carry client_id.
        token_use = claims.get("token_use")
        audience = claims.get("aud") if token_use == "id" else claims.get("client_id")
        if audience != client_id:
            raise ProviderInvalidCredentialsError("Token audience mismatch", provider=self.provider_type)
        return principal_from_cognito_claims(claims)


def principal_from_cognito_claims(claims: dict[str, Any]) -> ProviderPrincipal:
    email_verified = claims.get("email_verified")
    return ProviderPrincipal(
        uid=str(claims["sub"]),
        email=str(claims.get("email") or claims.get("username") or ""),
        provider_type=PROVIDER_COGNITO,
        first_name=str(claims.get("given_name") or ""),
        last_name=str(claims.get("family_name") or ""),
        role=str(claims.get("custom:role") or "client"),
        email_verified=email_verified is True or email_verified == "true",
        phone_number=claims.get("phone_number"),
        claims=claims,
    )
