from __future__ import annotations

import logging

from authbridge.core.errors import (
    AuthenticationError,
    AuthFlowError,
    ConflictError,
    NotConfirmedError,
    ProviderAlreadyExistsError,
    ProviderError,
    ProviderInvalidCodeError,
    ProviderInvalidCredentialsError,
    ProviderNotConfirmedError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderUnavailableError,
    RateLimitError,
    ValidationError,
)


logger = logging.getLogger(__name__)

# Providers do not report a retry hint we can trust; ask callers to back off for a minute.
_PROVIDER_RETRY_AFTER_S = 60


def translate_provider_error(exc: ProviderError) -> AuthFlowError:
    """Map a normalized provider failure onto the caller-facing taxonomy.

    Unknown principals and wrong passwords produce the same 401 so responses
    do not reveal which accounts exist.
    """
    if isinstance(exc, (ProviderNotFoundError, ProviderInvalidCredentialsError)):
        return AuthenticationError("Invalid credentials")
    if isinstance(exc, ProviderNotConfirmedError):
        return NotConfirmedError()
    if isinstance(exc, ProviderAlreadyExistsError):
        return ConflictError("An account with this email already exists", details={"field": "email"})
    if isinstance(exc, ProviderInvalidCodeError):
        return ValidationError("Invalid or expired code")
    if isinstance(exc, ProviderRateLimitedError):
        return RateLimitError(action="provider", retry_after_s=_PROVIDER_RETRY_AFTER_S)
    logger.error("provider_request_failed provider=%s kind=%s", exc.provider, exc.kind, exc_info=exc)
    return ProviderUnavailableError("Identity provider request failed")
