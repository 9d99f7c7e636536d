from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from authbridge.domain.models import User, UserSession
from authbridge.services.auth.login import LoginOutcome
from authbridge.services.auth.tokens import TokenPair


class CamelModel(BaseModel):
    # camelCase on the wire, snake_case in Python.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Requests


class LoginRequest(CamelModel):
    email: str | None = None
    password: str | None = None
    id_token: str | None = None
    # Explicit provider tag; token sniffing is only the fallback.
    provider: str | None = None
    mfa_token: str | None = None
    device_info: dict[str, Any] | None = None
    remember_me: bool = False


class RegisterRequest(CamelModel):
    email: str
    password: str
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str = Field(min_length=1, max_length=120)
    role: str = "client"
    phone_number: str | None = None
    country_code: str | None = None
    provider: str | None = None


class ConfirmRequest(CamelModel):
    email: str
    code: str
    provider: str | None = None


class EmailRequest(CamelModel):
    email: str
    provider: str | None = None


class ResetPasswordRequest(CamelModel):
    email: str
    code: str
    new_password: str
    provider: str | None = None


class RefreshRequest(CamelModel):
    refresh_token: str


class LogoutRequest(CamelModel):
    # Falls back to the Authorization header when omitted.
    access_token: str | None = None
    user_id: int | None = None


class CheckDuplicateRequest(CamelModel):
    email: str | None = None
    phone_number: str | None = None
    country_code: str | None = None


class MfaCodeRequest(CamelModel):
    code: str = Field(min_length=4, max_length=16)


class SmsSetupRequest(CamelModel):
    phone_number: str
    country_code: str | None = None


class SendSmsCodeRequest(CamelModel):
    # Lets a caller stopped at the MFA gate request a login code.
    challenge_token: str | None = None


class MfaLoginRequest(CamelModel):
    challenge_token: str
    mfa_token: str
    device_info: dict[str, Any] | None = None


class InvalidateSessionRequest(CamelModel):
    session_id: str
    user_id: int | None = None


class InvalidateAllRequest(CamelModel):
    user_id: int | None = None
    # The caller's own session survives unless this is false.
    keep_current: bool = True


class TrustDeviceRequest(CamelModel):
    device_hash: str
    user_id: int | None = None


class RoleAssignmentRequest(CamelModel):
    user_id: int
    role_name: str
    is_primary: bool = False
    expires_at: datetime | None = None


class RoleRevokeRequest(CamelModel):
    user_id: int
    role_name: str


class ConsentRequest(CamelModel):
    consent_type: str
    granted: bool
    consent_version: str | None = None


class DataRequestCreate(CamelModel):
    request_type: str = "export"
    reason: str | None = Field(default=None, max_length=2000)


class AnonymizeRequest(CamelModel):
    user_id: int
    reason: str = Field(min_length=1, max_length=2000)


# Responses


class UserOut(CamelModel):
    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    role: str
    account_status: str
    current_provider: str
    mfa_enabled: bool = False
    is_verified: bool = False
    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)


class TokensOut(CamelModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class SuspiciousActivityOut(CamelModel):
    suspicious: bool = False
    reasons: list[str] = Field(default_factory=list)


class LoginResponse(CamelModel):
    requires_mfa: bool = Field(default=False, alias="requiresMFA")
    mfa_enabled: bool = False
    user_id: int | None = None
    challenge_token: str | None = None
    user: UserOut | None = None
    tokens: TokensOut | None = None
    session_id: str | None = None
    suspicious_activity: SuspiciousActivityOut | None = None
    mfa_method: str | None = None
    is_new_user: bool = False


class RegisterResponse(CamelModel):
    user: UserOut
    requires_verification: bool = True
    provider: str


class ConfirmResponse(CamelModel):
    verified: bool = True
    user: UserOut | None = None


class MessageResponse(CamelModel):
    message: str
    provider: str | None = None


class ResetPasswordResponse(CamelModel):
    message: str
    provider: str
    sessions_ended: int = 0


class RefreshResponse(CamelModel):
    tokens: TokensOut
    session_id: str | None = None


class LogoutResponse(CamelModel):
    logged_out: bool = True
    sessions_ended: int = 0


class CheckDuplicateResponse(CamelModel):
    available: bool = True


class MeResponse(CamelModel):
    user: UserOut
    session_id: str | None = None
    provider: str | None = None


class MfaStatusResponse(CamelModel):
    mfa_enabled: bool
    totp_enabled: bool
    sms_enabled: bool
    sms_phone_number: str | None = None
    backup_codes_count: int = 0


class TotpSetupResponse(CamelModel):
    secret: str
    qr_code_uri: str = Field(alias="qrCodeUri")
    manual_entry_key: str
    backup_codes: list[str]


class MfaEnabledResponse(CamelModel):
    enabled: bool = True
    method: str
    # Present only when this call generated the user's first set of codes.
    backup_codes: list[str] | None = None


class SmsDispatchResponse(CamelModel):
    sent: bool = True
    phone_number: str | None = None
    expires_at: datetime


class BackupCodesResponse(CamelModel):
    backup_codes: list[str]


class MfaDisabledResponse(CamelModel):
    disabled: bool = True


class SessionOut(CamelModel):
    session_id: str
    device_hash: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    auth_provider: str | None = None
    remember_me: bool = False
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    is_current: bool = False


class ActiveSessionsResponse(CamelModel):
    sessions: list[SessionOut]
    total: int


class InvalidateSessionResponse(CamelModel):
    invalidated: bool


class InvalidateAllResponse(CamelModel):
    sessions_ended: int


class DeviceOut(CamelModel):
    device_hash: str
    device_name: str | None = None
    device_type: str | None = None
    ip_address: str | None = None
    is_trusted: bool = False
    trusted_at: datetime | None = None
    first_seen_at: datetime
    last_seen_at: datetime


class DevicesResponse(CamelModel):
    devices: list[DeviceOut]


class SessionAnalyticsResponse(CamelModel):
    total_sessions: int
    active_sessions: int
    unique_devices: int
    unique_ips: int = Field(alias="uniqueIPs")
    # Minutes.
    average_session_duration: float
    period_days: int


class RoleOut(CamelModel):
    name: str
    display_name: str
    description: str | None = None
    permissions: list[str] = Field(default_factory=list)


class PermissionOut(CamelModel):
    name: str
    resource: str
    action: str
    description: str | None = None


class RolesResponse(CamelModel):
    roles: list[RoleOut]


class PermissionsResponse(CamelModel):
    permissions: list[PermissionOut]


class RoleAssignmentResponse(CamelModel):
    user_id: int
    role_name: str
    roles: list[str]
    permissions: list[str]


class ConsentOut(CamelModel):
    consent_type: str
    granted: bool
    consent_version: str | None = None
    granted_at: datetime | None = None
    withdrawn_at: datetime | None = None
    updated_at: datetime | None = None


class ConsentsResponse(CamelModel):
    consents: list[ConsentOut]


class AuditEntryOut(CamelModel):
    audit_id: str
    user_id: int | None = None
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    compliance_level: str
    outcome: str
    ip_address: str | None = None
    session_id: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime


class AuditTrailResponse(CamelModel):
    entries: list[AuditEntryOut]
    limit: int
    offset: int


class DataRequestOut(CamelModel):
    request_id: str
    request_type: str
    status: str
    reason: str | None = None
    requested_at: datetime
    completed_at: datetime | None = None


class DataRequestsResponse(CamelModel):
    requests: list[DataRequestOut]


class AnonymizeResponse(CamelModel):
    user_id: int
    anonymized: bool = True


class ProviderHealthOut(CamelModel):
    provider: str
    available: bool
    configured: bool
    primary: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(CamelModel):
    status: str
    environment: str
    database: str
    providers: list[ProviderHealthOut] = Field(default_factory=list)
    database_pool: dict[str, int | None] = Field(default_factory=dict)


def user_out(user: User, *, roles: list[str] | None = None, permissions: list[str] | None = None) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        account_status=user.account_status,
        current_provider=user.current_auth_provider,
        mfa_enabled=bool(user.mfa_enabled),
        is_verified=bool(user.is_verified),
        roles=roles or [],
        permissions=permissions or [],
    )


def tokens_out(tokens: TokenPair) -> TokensOut:
    return TokensOut(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        token_type=tokens.token_type,
    )


def login_response(outcome: LoginOutcome) -> LoginResponse:
    # The MFA gate answers with a challenge and no credentials.
    if outcome.requires_mfa:
        return LoginResponse(
            requires_mfa=True,
            mfa_enabled=True,
            user_id=outcome.user.id,
            challenge_token=outcome.challenge_token,
            is_new_user=outcome.is_new_user,
        )
    suspicious = outcome.suspicious
    return LoginResponse(
        requires_mfa=False,
        mfa_enabled=bool(outcome.user.mfa_enabled),
        user_id=outcome.user.id,
        user=user_out(outcome.user, roles=outcome.roles, permissions=outcome.permissions),
        tokens=tokens_out(outcome.tokens) if outcome.tokens else None,
        session_id=outcome.session_id,
        suspicious_activity=SuspiciousActivityOut(
            suspicious=suspicious.suspicious, reasons=list(suspicious.reasons)
        )
        if suspicious
        else None,
        mfa_method=outcome.mfa_method,
        is_new_user=outcome.is_new_user,
    )


def session_out(record: UserSession, *, current_session_id: str | None) -> SessionOut:
    return SessionOut(
        session_id=record.session_id,
        device_hash=record.device_hash,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        auth_provider=record.auth_provider,
        remember_me=bool(record.remember_me),
        created_at=record.created_at,
        last_accessed_at=record.last_accessed_at,
        expires_at=record.expires_at,
        is_current=record.session_id == current_session_id,
    )
