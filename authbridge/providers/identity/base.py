from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Protocol


@dataclass(frozen=True)
class ProviderPrincipal:
    uid: str
    email: str
    provider_type: str
    first_name: str = ""
    last_name: str = ""
    # Role hint carried by the provider; the local user row stays authoritative.
    role: str = "client"
    email_verified: bool = False
    phone_number: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(frozen=True)
class ProviderTokens:
    access_token: str
    id_token: str | None
    refresh_token: str | None
    expires_in: int


@dataclass(frozen=True)
class ProviderAuthResult:
    principal: ProviderPrincipal
    tokens: ProviderTokens


@dataclass(frozen=True)
class SignUpAttributes:
    first_name: str
    last_name: str
    role: str
    phone_number: str | None = None
    country_code: str | None = None


class IdentityProvider(Protocol):
    provider_type: str

    def is_available(self) -> bool:
        ...

    async def health(self) -> dict[str, Any]:
        ...

    async def sign_up(self, email: str, password: str, attributes: SignUpAttributes) -> str:
        ...

    async def sign_in(self, email: str, password: str) -> ProviderAuthResult:
        ...

    async def verify_token(self, token: str) -> ProviderPrincipal:
        ...

    async def confirm_sign_up(self, email: str, code: str) -> None:
        ...

    async def resend_code(self, email: str) -> None:
        ...

    async def forgot_password(self, email: str) -> None:
        ...

    async def confirm_forgot_password(self, email: str, code: str, new_password: str) -> None:
        ...

    async def refresh_token(self, refresh_token: str) -> ProviderAuthResult:
        ...

    async def sign_out(self, token: str) -> None:
        ...


def format_phone_number(phone_number: str | None, country_code: str | None) -> str | None:
    # Normalize local numbers plus a country code into E.164.
    if not phone_number:
        return None
    digits = re.sub(r"\D", "", phone_number)
    if phone_number.strip().startswith("+"):
        return f"+{digits}"
    country = re.sub(r"\D", "", country_code or "1") or "1"
    return f"+{country}{digits}"


def split_display_name(name: str | None) -> tuple[str, str]:
    # Split "First Last Names" into the first token and the remainder.
    if not name:
        return "", ""
    parts = name.split()
    return parts[0], " ".join(parts[1:])
