from __future__ import annotations

from dataclasses import dataclass
import logging

import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.config import PROVIDER_COGNITO, PROVIDER_FIREBASE
from authbridge.core.errors import (
    ProviderError,
    ProviderInvalidCredentialsError,
    ProviderUnavailableError,
    ProviderUnknownError,
    ValidationError,
)
from authbridge.persistence.repos.users import get_user_by_email
from authbridge.providers.identity.base import IdentityProvider, ProviderPrincipal
from authbridge.providers.identity.factory import SUPPORTED_PROVIDERS, ProviderContext


logger = logging.getLogger(__name__)

SOURCE_EXPLICIT = "explicit"
SOURCE_TOKEN = "token"
SOURCE_USER = "user"
SOURCE_PRIMARY = "primary"

_SIGNUP_SOURCES = {
    PROVIDER_FIREBASE: ("web_app", "web"),
    PROVIDER_COGNITO: ("mobile_app", "mobile"),
}


@dataclass(frozen=True)
class ResolvedProvider:
    provider: IdentityProvider
    provider_type: str
    source: str


def validate_provider_hint(provider_hint: str | None) -> str | None:
    # Reject unknown tags early; a known but unconfigured tag falls through later.
    if provider_hint is None:
        return None
    normalized = provider_hint.strip().lower()
    if normalized not in SUPPORTED_PROVIDERS:
        raise ValidationError(
            "Unsupported provider", details={"provider": provider_hint, "supported": list(SUPPORTED_PROVIDERS)}
        )
    return normalized


def detect_token_provider(token: str) -> str | None:
    """Classify a bearer token by its structural markers.

    This is a heuristic over unverified header and claims. It returns None
    when the token is unreadable or the markers are missing or contradictory,
    which callers treat as a signal to try every provider.
    """
    try:
        header = jwt.get_unverified_header(token)
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    issuer = str(claims.get("iss") or "")
    audience = claims.get("aud")
    if isinstance(audience, list):
        audience = " ".join(str(item) for item in audience)
    audience = str(audience or "")

    looks_firebase = (
        ("securetoken.google.com" in issuer and bool(header.get("kid")))
        or "firebase" in issuer.lower()
        or "firebase" in audience.lower()
    )
    looks_cognito = "cognito-idp" in issuer
    if looks_firebase and not looks_cognito:
        return PROVIDER_FIREBASE
    if looks_cognito and not looks_firebase:
        return PROVIDER_COGNITO
    return None


async def resolve_provider(
    *,
    session: AsyncSession,
    context: ProviderContext,
    email: str | None = None,
    token: str | None = None,
    provider_hint: str | None = None,
) -> ResolvedProvider:
    # First match wins: explicit tag, token markers, the user's current provider, primary.
    hint = validate_provider_hint(provider_hint)
    if hint:
        provider = context.get(hint)
        if provider is not None:
            return ResolvedProvider(provider=provider, provider_type=hint, source=SOURCE_EXPLICIT)
        logger.info("provider_hint_unavailable provider=%s", hint)

    if token:
        detected = detect_token_provider(token)
        provider = context.get(detected)
        if provider is not None:
            return ResolvedProvider(provider=provider, provider_type=detected, source=SOURCE_TOKEN)

    if email:
        user = await get_user_by_email(session, email)
        if user is not None:
            provider = context.get(user.current_auth_provider)
            if provider is not None:
                return ResolvedProvider(
                    provider=provider, provider_type=user.current_auth_provider, source=SOURCE_USER
                )

    provider = context.primary()
    return ResolvedProvider(provider=provider, provider_type=provider.provider_type, source=SOURCE_PRIMARY)


async def verify_token_with_fallback(
    *,
    context: ProviderContext,
    token: str,
    provider_hint: str | None = None,
) -> tuple[ProviderPrincipal, str]:
    """Verify a provider token, returning the principal and the provider type that accepted it.

    A classified token (explicit tag or recognizable markers) is verified by
    that provider only. An unclassified token is offered to each configured
    provider in turn, primary first, and the first success wins.
    """
    hint = validate_provider_hint(provider_hint)
    classified = hint if context.get(hint) is not None else detect_token_provider(token)
    if classified is not None and context.get(classified) is not None:
        provider = context.require(classified)
        principal = await provider.verify_token(token)
        return principal, classified

    candidates = context.available_types()
    if not candidates:
        raise ProviderUnavailableError("No identity provider is configured")
    errors: list[ProviderError] = []
    for provider_type in candidates:
        try:
            principal = await context.require(provider_type).verify_token(token)
        except ProviderError as exc:
            errors.append(exc)
            continue
        logger.info("token_verified_by_fallback provider=%s", provider_type)
        return principal, provider_type
    if all(isinstance(exc, ProviderUnknownError) for exc in errors):
        raise ProviderUnknownError("Every provider failed to verify the token")
    raise ProviderInvalidCredentialsError("Token rejected by every provider")


def signup_source(provider_type: str) -> tuple[str, str]:
    # Firebase users come from the web app, Cognito users from mobile.
    return _SIGNUP_SOURCES.get(provider_type, ("unknown", "unknown"))
