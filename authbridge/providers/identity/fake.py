from __future__ import annotations

from dataclasses import dataclass
import secrets
import time
from typing import Any
from uuid import uuid4

import jwt

from authbridge.core.config import PROVIDER_COGNITO, PROVIDER_FIREBASE
from authbridge.core.errors import (
    ProviderAlreadyExistsError,
    ProviderInvalidCodeError,
    ProviderInvalidCredentialsError,
    ProviderNotConfirmedError,
    ProviderNotFoundError,
)
from authbridge.providers.identity.base import (
    ProviderAuthResult,
    ProviderPrincipal,
    ProviderTokens,
    SignUpAttributes,
    format_phone_number,
)


# Issuers mimic the real providers so token classification behaves the same.
_FAKE_ISSUERS = {
    PROVIDER_COGNITO: "https://cognito-idp.local.amazonaws.com/local-pool",
    PROVIDER_FIREBASE: "https://securetoken.google.com/local-project",
}
_FAKE_AUDIENCES = {
    PROVIDER_COGNITO: "local-client",
    PROVIDER_FIREBASE: "local-project",
}


@dataclass
class _FakeAccount:
    uid: str
    email: str
    password: str
    attributes: SignUpAttributes
    confirmed: bool
    # Bumped by sign-out; tokens minted for an older generation are revoked.
    generation: int = 0


class InMemoryIdentityProvider:
    """Deterministic provider for local development and tests.

    Tokens are HS256 JWTs signed with a per-instance secret; their issuer and
    claim layout follow the provider being imitated.
    """

    def __init__(self, provider_type: str, *, available: bool = True) -> None:
        self.provider_type = provider_type
        self.issuer = _FAKE_ISSUERS[provider_type]
        self.audience = _FAKE_AUDIENCES[provider_type]
        self._available = available
        self._secret = secrets.token_hex(32)
        self._accounts: dict[str, _FakeAccount] = {}
        self._codes: dict[tuple[str, str], str] = {}
        self._refresh_tokens: dict[str, str] = {}
        # Record calls so tests can assert which provider served a request.
        self.calls: list[str] = []

    def is_available(self) -> bool:
        return self._available

    async def health(self) -> dict[str, Any]:
        return {
            "provider": self.provider_type,
            "available": self._available,
            "configured": True,
            "details": {"driver": "fake", "accounts": len(self._accounts)},
        }

    def add_account(
        self,
        email: str,
        password: str,
        *,
        confirmed: bool = True,
        first_name: str = "Test",
        last_name: str = "User",
        role: str = "client",
        uid: str | None = None,
    ) -> str:
        # Seed an account directly, bypassing sign-up codes.
        account = _FakeAccount(
            uid=uid or uuid4().hex,
            email=email.lower(),
            password=password,
            attributes=SignUpAttributes(first_name=first_name, last_name=last_name, role=role),
            confirmed=confirmed,
        )
        self._accounts[account.email] = account
        return account.uid

    def last_code(self, email: str, purpose: str = "confirm") -> str | None:
        return self._codes.get((purpose, email.lower()))

    def _account(self, email: str) -> _FakeAccount:
        account = self._accounts.get(email.lower())
        if account is None:
            raise ProviderNotFoundError("Unknown principal", provider=self.provider_type)
        return account

    def _issue_code(self, email: str, purpose: str) -> str:
        code = f"{secrets.randbelow(1_000_000):06d}"
        self._codes[(purpose, email.lower())] = code
        return code

    def _consume_code(self, email: str, purpose: str, code: str) -> None:
        expected = self._codes.get((purpose, email.lower()))
        if expected is None or not secrets.compare_digest(expected, code):
            raise ProviderInvalidCodeError("Invalid code", provider=self.provider_type)
        self._codes.pop((purpose, email.lower()), None)

    def issue_id_token(self, email: str, *, ttl_seconds: int = 3600) -> str:
        # Mint the token a client SDK would hold after signing in with this provider.
        account = self._account(email)
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account.uid,
            "email": account.email,
            "email_verified": account.confirmed,
            "gen": account.generation,
            "iat": now,
            "exp": now + ttl_seconds,
        }
        if self.provider_type == PROVIDER_COGNITO:
            claims.update(
                {
                    "token_use": "id",
                    "given_name": account.attributes.first_name,
                    "family_name": account.attributes.last_name,
                    "custom:role": account.attributes.role,
                }
            )
        else:
            claims.update(
                {
                    "user_id": account.uid,
                    "name": f"{account.attributes.first_name} {account.attributes.last_name}".strip(),
                    "firstName": account.attributes.first_name,
                    "lastName": account.attributes.last_name,
                    "role": account.attributes.role,
                }
            )
        return jwt.encode(claims, self._secret, algorithm="HS256", headers={"kid": f"fake-{self.provider_type}"})

    async def sign_up(self, email: str, password: str, attributes: SignUpAttributes) -> str:
        self.calls.append("sign_up")
        if email.lower() in self._accounts:
            raise ProviderAlreadyExistsError("Principal exists", provider=self.provider_type)
        phone = format_phone_number(attributes.phone_number, attributes.country_code)
        account = _FakeAccount(
            uid=uuid4().hex,
            email=email.lower(),
            password=password,
            attributes=SignUpAttributes(
                first_name=attributes.first_name,
                last_name=attributes.last_name,
                role=attributes.role,
                phone_number=phone,
            ),
            confirmed=False,
        )
        self._accounts[account.email] = account
        self._issue_code(email, "confirm")
        return account.uid

    async def sign_in(self, email: str, password: str) -> ProviderAuthResult:
        self.calls.append("sign_in")
        account = self._account(email)
        if not secrets.compare_digest(account.password, password):
            raise ProviderInvalidCredentialsError("Bad password", provider=self.provider_type)
        if not account.confirmed:
            raise ProviderNotConfirmedError("Not confirmed", provider=self.provider_type)
        return self._auth_result(account)

    def _auth_result(self, account: _FakeAccount) -> ProviderAuthResult:
        id_token = self.issue_id_token(account.email)
        refresh = secrets.token_urlsafe(24)
        self._refresh_tokens[refresh] = account.email
        principal = self._principal(jwt.decode(id_token, options={"verify_signature": False}))
        return ProviderAuthResult(
            principal=principal,
            tokens=ProviderTokens(
                access_token=id_token, id_token=id_token, refresh_token=refresh, expires_in=3600
            ),
        )

    async def verify_token(self, token: str) -> ProviderPrincipal:
        self.calls.append("verify_token")
        try:
            claims = jwt.decode(
                token, self._secret, algorithms=["HS256"], audience=self.audience, issuer=self.issuer
            )
        except jwt.PyJWTError as exc:
            raise ProviderInvalidCredentialsError("Token verification failed", provider=self.provider_type) from exc
        account = self._accounts.get(str(claims.get("email", "")).lower())
        if account is not None and claims.get("gen", 0) < account.generation:
            raise ProviderInvalidCredentialsError("Token revoked", provider=self.provider_type)
        return self._principal(claims)

    def _principal(self, claims: dict[str, Any]) -> ProviderPrincipal:
        account = self._accounts.get(str(claims.get("email", "")).lower())
        attributes = account.attributes if account else SignUpAttributes("", "", "client")
        return ProviderPrincipal(
            uid=str(claims["sub"]),
            email=str(claims.get("email") or ""),
            provider_type=self.provider_type,
            first_name=attributes.first_name,
            last_name=attributes.last_name,
            role=attributes.role,
            email_verified=bool(claims.get("email_verified")),
            phone_number=attributes.phone_number,
            claims=claims,
        )

    async def confirm_sign_up(self, email: str, code: str) -> None:
        self.calls.append("confirm_sign_up")
        account = self._account(email)
        self._consume_code(email, "confirm", code)
        account.confirmed = True

    async def resend_code(self, email: str) -> None:
        self.calls.append("resend_code")
        self._account(email)
        self._issue_code(email, "confirm")

    async def forgot_password(self, email: str) -> None:
        self.calls.append("forgot_password")
        self._account(email)
        self._issue_code(email, "reset")

    async def confirm_forgot_password(self, email: str, code: str, new_password: str) -> None:
        self.calls.append("confirm_forgot_password")
        account = self._account(email)
        self._consume_code(email, "reset", code)
        account.password = new_password

    async def refresh_token(self, refresh_token: str) -> ProviderAuthResult:
        self.calls.append("refresh_token")
        email = self._refresh_tokens.get(refresh_token)
        if email is None:
            raise ProviderInvalidCredentialsError("Unknown refresh token", provider=self.provider_type)
        return self._auth_result(self._account(email))

    async def sign_out(self, token: str) -> None:
        self.calls.append("sign_out")
        principal = await self.verify_token(token)
        account = self._account(principal.email)
        account.generation += 1
        for refresh, email in list(self._refresh_tokens.items()):
            if email == account.email:
                self._refresh_tokens.pop(refresh, None)
