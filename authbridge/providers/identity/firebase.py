from __future__ import annotations

import json
import logging
import time
from typing import Any

from cryptography import x509
import httpx
import jwt

from authbridge.core.config import PROVIDER_FIREBASE, get_settings
from authbridge.core.errors import (
    ProviderAlreadyExistsError,
    ProviderConfigError,
    ProviderError,
    ProviderInvalidCodeError,
    ProviderInvalidCredentialsError,
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
    split_display_name,
)


logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
SECURETOKEN_CERTS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)
_ADMIN_SCOPES = (
    "https://www.googleapis.com/auth/identitytoolkit "
    "https://www.googleapis.com/auth/firebase "
    "https://www.googleapis.com/auth/cloud-platform"
)

_ERROR_MAP: dict[str, type[ProviderError]] = {
    "EMAIL_NOT_FOUND": ProviderNotFoundError,
    "USER_NOT_FOUND": ProviderNotFoundError,
    "INVALID_PASSWORD": ProviderInvalidCredentialsError,
    "INVALID_LOGIN_CREDENTIALS": ProviderInvalidCredentialsError,
    "USER_DISABLED": ProviderInvalidCredentialsError,
    "INVALID_ID_TOKEN": ProviderInvalidCredentialsError,
    "TOKEN_EXPIRED": ProviderInvalidCredentialsError,
    "INVALID_REFRESH_TOKEN": ProviderInvalidCredentialsError,
    "EMAIL_EXISTS": ProviderAlreadyExistsError,
    "INVALID_OOB_CODE": ProviderInvalidCodeError,
    "EXPIRED_OOB_CODE": ProviderInvalidCodeError,
    "TOO_MANY_ATTEMPTS_TRY_LATER": ProviderRateLimitedError,
}


def firebase_error_code(body: Any) -> str:
    # REST errors look like {"error": {"message": "EMAIL_NOT_FOUND : detail"}}.
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict):
        message = str(error.get("message") or "")
    else:
        message = str(error or "")
    return message.split(":")[0].strip().split(" ")[0].upper()


def map_firebase_error(status_code: int, body: Any) -> ProviderError:
    code = firebase_error_code(body)
    error_cls = _ERROR_MAP.get(code)
    if error_cls is None:
        logger.warning("firebase_unmapped_error status=%s code=%s", status_code, code)
        error_cls = ProviderRateLimitedError if status_code == 429 else ProviderUnknownError
    return error_cls(f"Firebase request failed: {code or status_code}", provider=PROVIDER_FIREBASE)


class FirebaseIdentityProvider:
    provider_type = PROVIDER_FIREBASE

    def __init__(
        self,
        *,
        project_id: str | None,
        api_key: str | None,
        client_email: str | None = None,
        private_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = get_settings()
        self._project_id = project_id
        self._api_key = api_key
        self._client_email = client_email
        # Private keys usually arrive from env vars with escaped newlines.
        self._private_key = private_key.replace("\\n", "\n") if private_key else None
        self._client = client
        self._certs: dict[str, Any] | None = None
        self._certs_fetched_at = 0.0
        self._admin_token: str | None = None
        self._admin_token_expires_at = 0.0

    @property
    def issuer(self) -> str:
        return f"https://securetoken.google.com/{self._project_id}"

    def is_available(self) -> bool:
        return bool(self._project_id and self._api_key)

    def has_admin_credentials(self) -> bool:
        return bool(self._client_email and self._private_key)

    async def health(self) -> dict[str, Any]:
        return {
            "provider": self.provider_type,
            "available": self.is_available(),
            "configured": self.is_available(),
            "details": {
                "project_id": self._project_id,
                "admin_credentials": self.has_admin_credentials(),
                "certs_cached": self._certs is not None,
            },
        }

    def _require_api_key(self) -> str:
        if not self.is_available():
            raise ProviderConfigError("FIREBASE_PROJECT_ID and FIREBASE_API_KEY are required")
        return str(self._api_key)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, **kwargs)
            timeout = self._settings.ext_call_timeout_ms / 1000
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("firebase_call_failed url=%s", url.split("?")[0], exc_info=exc)
            raise ProviderUnknownError("Firebase request failed", provider=self.provider_type) from exc

    async def _call(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, url, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            raise map_firebase_error(response.status_code, body)
        return body

    async def _public_call(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        api_key = self._require_api_key()
        return await self._call(
            "POST", f"{IDENTITY_TOOLKIT_URL}/accounts:{endpoint}", params={"key": api_key}, json=payload
        )

    async def _admin_call(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        token = await self._get_admin_token()
        url = f"{IDENTITY_TOOLKIT_URL}/projects/{self._project_id}/accounts:{endpoint}"
        return await self._call("POST", url, json=payload, headers={"Authorization": f"Bearer {token}"})

    async def _get_admin_token(self) -> str:
        # Exchange a service-account assertion for a short-lived OAuth token.
        if not self.has_admin_credentials():
            raise ProviderConfigError("FIREBASE_CLIENT_EMAIL and FIREBASE_PRIVATE_KEY are required")
        now = time.time()
        if self._admin_token and now < self._admin_token_expires_at - 60:
            return self._admin_token
        assertion = jwt.encode(
            {
                "iss": self._client_email,
                "scope": _ADMIN_SCOPES,
                "aud": GOOGLE_OAUTH_TOKEN_URL,
                "iat": int(now),
                "exp": int(now) + 3600,
            },
            self._private_key,
            algorithm="RS256",
        )
        body = await self._call(
            "POST",
            GOOGLE_OAUTH_TOKEN_URL,
            data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
        )
        self._admin_token = str(body["access_token"])
        self._admin_token_expires_at = now + int(body.get("expires_in") or 3600)
        return self._admin_token

    async def sign_up(self, email: str, password: str, attributes: SignUpAttributes) -> str:
        body = await self._public_call(
            "signUp", {"email": email, "password": password, "returnSecureToken": True}
        )
        uid = str(body["localId"])
        if self.has_admin_credentials():
            update: dict[str, Any] = {
                "localId": uid,
                "displayName": f"{attributes.first_name} {attributes.last_name}".strip(),
                "customAttributes": json.dumps(
                    {
                        "role": attributes.role,
                        "firstName": attributes.first_name,
                        "lastName": attributes.last_name,
                    }
                ),
            }
            phone = format_phone_number(attributes.phone_number, attributes.country_code)
            if phone:
                update["phoneNumber"] = phone
            await self._admin_call("update", update)
        else:
            logger.warning("firebase_signup_claims_skipped reason=no_admin_credentials")
        if body.get("idToken"):
            await self._public_call("sendOobCode", {"requestType": "VERIFY_EMAIL", "idToken": body["idToken"]})
        return uid

    async def sign_in(self, email: str, password: str) -> ProviderAuthResult:
        body = await self._public_call(
            "signInWithPassword", {"email": email, "password": password, "returnSecureToken": True}
        )
        principal = await self.verify_token(body["idToken"])
        tokens = ProviderTokens(
            access_token=body["idToken"],
            id_token=body["idToken"],
            refresh_token=body.get("refreshToken"),
            expires_in=int(body.get("expiresIn") or 3600),
        )
        return ProviderAuthResult(principal=principal, tokens=tokens)

    async def confirm_sign_up(self, email: str, code: str) -> None:
        # Applying the VERIFY_EMAIL oob code marks the address verified.
        body = await self._public_call("update", {"oobCode": code})
        confirmed_email = body.get("email")
        if confirmed_email and confirmed_email.lower() != email.lower():
            raise ProviderInvalidCodeError("Code issued for another account", provider=self.provider_type)

    async def resend_code(self, email: str) -> None:
        await self._admin_call("sendOobCode", {"requestType": "VERIFY_EMAIL", "email": email})

    async def forgot_password(self, email: str) -> None:
        await self._public_call("sendOobCode", {"requestType": "PASSWORD_RESET", "email": email})

    async def confirm_forgot_password(self, email: str, code: str, new_password: str) -> None:
        body = await self._public_call("resetPassword", {"oobCode": code, "newPassword": new_password})
        reset_email = body.get("email")
        if reset_email and reset_email.lower() != email.lower():
            raise ProviderInvalidCodeError("Code issued for another account", provider=self.provider_type)

    async def refresh_token(self, refresh_token: str) -> ProviderAuthResult:
        api_key = self._require_api_key()
        body = await self._call(
            "POST",
            SECURE_TOKEN_URL,
            params={"key": api_key},
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
        )
        principal = await self.verify_token(body["id_token"])
        tokens = ProviderTokens(
            access_token=body["id_token"],
            id_token=body["id_token"],
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_in=int(body.get("expires_in") or 3600),
        )
        return ProviderAuthResult(principal=principal, tokens=tokens)

    async def sign_out(self, token: str) -> None:
        # Moving validSince forward revokes every refresh token issued before now.
        principal = await self.verify_token(token)
        await self._admin_call("update", {"localId": principal.uid, "validSince": str(int(time.time()))})

    async def _get_certs(self, *, force: bool = False) -> dict[str, Any]:
        ttl = self._settings.jwks_cache_ttl_seconds
        if not force and self._certs is not None and time.monotonic() - self._certs_fetched_at < ttl:
            return self._certs
        body = await self._call("GET", SECURETOKEN_CERTS_URL)
        self._certs = body
        self._certs_fetched_at = time.monotonic()
        return body

    async def _signing_key(self, kid: str | None) -> Any:
        certs = await self._get_certs()
        if kid not in certs:
            certs = await self._get_certs(force=True)
        pem = certs.get(kid) if kid else None
        if not pem:
            raise ProviderInvalidCredentialsError("Unknown signing key", provider=self.provider_type)
        return x509.load_pem_x509_certificate(pem.encode("utf-8")).public_key()

    async def verify_token(self, token: str) -> ProviderPrincipal:
        self._require_api_key()
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
                audience=self._project_id,
                issuer=self.issuer,
                leeway=self._settings.provider_clock_skew_seconds,
            )
        except jwt.PyJWTError as exc:
            raise ProviderInvalidCredentialsError("Token verification failed", provider=self.provider_type) from exc
        if not claims.get("sub"):
            raise ProviderInvalidCredentialsError("Token missing subject", provider=self.provider_type)
        return principal_from_firebase_claims(claims)


def principal_from_firebase_claims(claims: dict[str, Any]) -> ProviderPrincipal:
    first_name, last_name = split_display_name(claims.get("name"))
    return ProviderPrincipal(
        uid=str(claims.get("user_id") or claims["sub"]),
        email=str(claims.get("email") or ""),
        provider_type=PROVIDER_FIREBASE,
        first_name=str(claims.get("firstName") or first_name),
        last_name=str(claims.get("lastName") or last_name),
        role=str(claims.get("role") or "client"),
        email_verified=bool(claims.get("email_verified")),
        phone_number=claims.get("phone_number"),
        claims=claims,
    )
