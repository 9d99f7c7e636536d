from __future__ import annotations

from datetime import datetime
from typing import Any


class AuthBridgeError(Exception):
    """Base error for authbridge."""


class DatabaseError(AuthBridgeError):
    """Database layer failure."""


class ProviderConfigError(AuthBridgeError):
    """Missing or invalid identity provider configuration."""


class ProviderError(AuthBridgeError):
    """Identity provider call failed; subclasses carry the normalized kind."""

    kind = "unknown"

    def __init__(self, message: str = "Identity provider error", *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderNotFoundError(ProviderError):
    """Provider does not know the principal."""

    kind = "not_found"


class ProviderInvalidCredentialsError(ProviderError):
    """Wrong password, or an invalid/expired provider token."""

    kind = "invalid_credentials"


class ProviderNotConfirmedError(ProviderError):
    """Principal exists but has not confirmed sign-up."""

    kind = "not_confirmed"


class ProviderAlreadyExistsError(ProviderError):
    """Principal already registered with the provider."""

    kind = "already_exists"


class ProviderInvalidCodeError(ProviderError):
    """Confirmation or reset code rejected."""

    kind = "invalid_code"


class ProviderRateLimitedError(ProviderError):
    """Provider throttled the call."""

    kind = "rate_limited"


class ProviderUnknownError(ProviderError):
    """Any provider failure without a more specific mapping."""


class AuthFlowError(AuthBridgeError):
    """Caller-facing failure with a stable HTTP status and error code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retry_after_s: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_after_s = retry_after_s


class ValidationError(AuthFlowError):
    """Missing or malformed input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AuthFlowError):
    """Bad credentials or token."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class NotConfirmedError(AuthFlowError):
    """Principal has not completed sign-up verification."""

    status_code = 403
    code = "AUTH_NOT_CONFIRMED"

    def __init__(self, message: str = "Account not verified") -> None:
        super().__init__(message, details={"requires_verification": True})


class ForbiddenError(AuthFlowError):
    """Authenticated caller lacks permission or consent."""

    status_code = 403
    code = "AUTH_FORBIDDEN"


class TokenTheftError(AuthFlowError):
    """Refresh token reuse detected; every session of the user was revoked."""

    status_code = 403
    code = "TOKEN_REUSE_DETECTED"

    def __init__(self, message: str = "All sessions have been terminated") -> None:
        super().__init__(message)


class NotFoundError(AuthFlowError):
    """Referenced record does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AuthFlowError):
    """Duplicate identity."""

    status_code = 409
    code = "CONFLICT"


class LockoutError(AuthFlowError):
    """Account temporarily locked after repeated failures."""

    status_code = 423
    code = "ACCOUNT_LOCKED"

    def __init__(self, *, locked_until: datetime, retry_after_s: int) -> None:
        super().__init__(
            "Account temporarily locked due to repeated failed logins",
            details={"locked_until": locked_until.isoformat()},
            retry_after_s=retry_after_s,
        )
        self.locked_until = locked_until


class RateLimitError(AuthFlowError):
    """Too many attempts in the current window."""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, *, action: str, retry_after_s: int) -> None:
        super().__init__(
            "Too many attempts, try again later",
            details={"action": action, "retry_after_s": retry_after_s},
            retry_after_s=retry_after_s,
        )
        self.action = action


class ProviderUnavailableError(AuthFlowError):
    """No identity provider could serve the request."""

    status_code = 500
    code = "PROVIDER_UNAVAILABLE"


class RateLimitUnavailableError(AuthFlowError):
    """Rate limit storage is down and the limiter is configured to fail closed."""

    status_code = 500
    code = "RATE_LIMIT_UNAVAILABLE"
