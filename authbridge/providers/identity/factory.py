from __future__ import annotations

from functools import lru_cache
import logging
from typing import Any

from authbridge.core.config import PROVIDER_COGNITO, PROVIDER_FIREBASE, Settings, get_settings
from authbridge.core.errors import ProviderConfigError, ProviderUnavailableError
from authbridge.providers.identity.base import IdentityProvider
from authbridge.providers.identity.cognito import CognitoIdentityProvider
from authbridge.providers.identity.fake import InMemoryIdentityProvider
from authbridge.providers.identity.firebase import FirebaseIdentityProvider


logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = (PROVIDER_COGNITO, PROVIDER_FIREBASE)


class ProviderContext:
    """Provider instances built once per process and handed to request handlers.

    Holds at most one provider per type plus the configured primary type.
    Nothing here mutates after construction.
    """

    def __init__(self, providers: dict[str, IdentityProvider], *, primary_type: str) -> None:
        if primary_type not in SUPPORTED_PROVIDERS:
            raise ProviderConfigError(f"Unsupported primary provider: {primary_type}")
        self._providers = dict(providers)
        self.primary_type = primary_type

    def get(self, provider_type: str | None) -> IdentityProvider | None:
        # Return a provider only when it is built and usable.
        if provider_type is None:
            return None
        provider = self._providers.get(provider_type)
        if provider is None or not provider.is_available():
            return None
        return provider

    def available_types(self) -> list[str]:
        # Primary first so fallbacks prefer it.
        ordered = [self.primary_type] + [t for t in SUPPORTED_PROVIDERS if t != self.primary_type]
        return [provider_type for provider_type in ordered if self.get(provider_type) is not None]

    def primary(self) -> IdentityProvider:
        provider = self.get(self.primary_type)
        if provider is not None:
            return provider
        # Primary down but the other provider configured: still serve requests.
        available = self.available_types()
        if not available:
            raise ProviderUnavailableError("No identity provider is configured")
        logger.warning("primary_provider_unavailable primary=%s using=%s", self.primary_type, available[0])
        return self._providers[available[0]]

    def require(self, provider_type: str) -> IdentityProvider:
        provider = self.get(provider_type)
        if provider is None:
            raise ProviderUnavailableError(f"Identity provider {provider_type} is not configured")
        return provider

    async def health(self) -> list[dict[str, Any]]:
        statuses = []
        for provider_type in SUPPORTED_PROVIDERS:
            provider = self._providers.get(provider_type)
            if provider is None:
                statuses.append(
                    {"provider": provider_type, "available": False, "configured": False, "details": {}}
                )
                continue
            status = await provider.health()
            status["primary"] = provider_type == self.primary_type
            statuses.append(status)
        return statuses


def _build_provider(provider_type: str, settings: Settings) -> IdentityProvider:
    if settings.auth_provider_driver == "fake":
        return InMemoryIdentityProvider(provider_type)
    if provider_type == PROVIDER_COGNITO:
        return CognitoIdentityProvider(
            region=settings.cognito_region,
            user_pool_id=settings.cognito_user_pool_id,
            client_id=settings.cognito_client_id,
        )
    return FirebaseIdentityProvider(
        project_id=settings.firebase_project_id,
        api_key=settings.firebase_api_key,
        client_email=settings.firebase_client_email,
        private_key=settings.firebase_private_key,
    )


def build_provider_context(settings: Settings | None = None) -> ProviderContext:
    settings = settings or get_settings()
    primary_type = settings.auth_provider_type.lower()
    mode = settings.auth_provider_mode.lower()
    if mode not in {"single", "dual"}:
        raise ProviderConfigError(f"Unsupported AUTH_PROVIDER_MODE: {mode}")
    provider_types = [primary_type] if mode == "single" else list(SUPPORTED_PROVIDERS)
    providers = {provider_type: _build_provider(provider_type, settings) for provider_type in provider_types}
    context = ProviderContext(providers, primary_type=primary_type)
    logger.info(
        "provider_context_built primary=%s mode=%s available=%s",
        primary_type,
        mode,
        ",".join(context.available_types()) or "none",
    )
    return context


@lru_cache
def get_provider_context() -> ProviderContext:
    # Initialize once per process; request handlers receive it through DI.
    return build_provider_context()
