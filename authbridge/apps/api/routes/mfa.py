from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_optional_principal,
    get_sms,
    resolve_target_user,
)
from authbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from authbridge.apps.api.response import SuccessEnvelope, success_response
from authbridge.apps.api.schemas import (
    BackupCodesResponse,
    LoginResponse,
    MfaCodeRequest,
    MfaDisabledResponse,
    MfaEnabledResponse,
    MfaLoginRequest,
    MfaStatusResponse,
    SendSmsCodeRequest,
    SmsDispatchResponse,
    SmsSetupRequest,
    TotpSetupResponse,
    login_response,
)
from authbridge.core.errors import AuthenticationError
from authbridge.core.logging import mask_phone
from authbridge.providers.sms.senders import SmsSender
from authbridge.services.audit import get_request_context
from authbridge.services.auth.login import complete_mfa_login
from authbridge.services.auth.mfa import (
    METHOD_SMS,
    METHOD_TOTP,
    disable_mfa,
    get_mfa_status,
    regenerate_backup_codes,
    send_sms_code,
    setup_sms,
    setup_totp,
    verify_sms_setup,
    verify_totp_setup,
)
from authbridge.services.auth.tokens import decode_mfa_challenge

router = APIRouter(prefix="/auth/mfa", tags=["mfa"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/status", response_model=SuccessEnvelope[MfaStatusResponse] | MfaStatusResponse)
async def mfa_status(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, user_id)
    status = await get_mfa_status(db, user=user)
    return success_response(request=request, data=MfaStatusResponse.model_validate(status))


@router.post("/setup-totp", response_model=SuccessEnvelope[TotpSetupResponse] | TotpSetupResponse)
async def setup_totp_route(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    setup = await setup_totp(db, user=principal.user, context=get_request_context(request))
    data = TotpSetupResponse(
        secret=setup.secret,
        qr_code_uri=setup.provisioning_uri,
        manual_entry_key=setup.secret,
        backup_codes=setup.backup_codes,
    )
    return success_response(request=request, data=data)


@router.post("/verify-totp", response_model=SuccessEnvelope[MfaEnabledResponse] | MfaEnabledResponse)
async def verify_totp_route(
    request: Request,
    payload: MfaCodeRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await verify_totp_setup(db, user=principal.user, code=payload.code, context=get_request_context(request))
    return success_response(request=request, data=MfaEnabledResponse(enabled=True, method=METHOD_TOTP))


@router.post("/setup-sms", response_model=SuccessEnvelope[SmsDispatchResponse] | SmsDispatchResponse)
async def setup_sms_route(
    request: Request,
    payload: SmsSetupRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    sender: SmsSender = Depends(get_sms),
) -> dict:
    dispatch = await setup_sms(
        db,
        user=principal.user,
        phone_number=payload.phone_number,
        country_code=payload.country_code,
        sender=sender,
        context=get_request_context(request),
    )
    data = SmsDispatchResponse(
        sent=True, phone_number=mask_phone(dispatch.phone_number), expires_at=dispatch.expires_at
    )
    return success_response(request=request, data=data)


@router.post("/verify-sms", response_model=SuccessEnvelope[MfaEnabledResponse] | MfaEnabledResponse)
async def verify_sms_route(
    request: Request,
    payload: MfaCodeRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    backup_codes = await verify_sms_setup(
        db, user=principal.user, code=payload.code, context=get_request_context(request)
    )
    data = MfaEnabledResponse(enabled=True, method=METHOD_SMS, backup_codes=backup_codes)
    return success_response(request=request, data=data)


@router.post("/send-sms-code", response_model=SuccessEnvelope[SmsDispatchResponse] | SmsDispatchResponse)
async def send_sms_code_route(
    request: Request,
    payload: SendSmsCodeRequest,
    principal: Principal | None = Depends(get_optional_principal),
    db: AsyncSession = Depends(get_db),
    sender: SmsSender = Depends(get_sms),
) -> dict:
    # Signed-in users or callers holding an MFA challenge token may request a login code.
    if principal is not None:
        user_id = principal.user_id
    elif payload.challenge_token:
        user_id = decode_mfa_challenge(payload.challenge_token).user_id
    else:
        raise AuthenticationError("Bearer token or challengeToken is required")
    dispatch = await send_sms_code(db, user_id=user_id, sender=sender, context=get_request_context(request))
    data = SmsDispatchResponse(
        sent=True, phone_number=mask_phone(dispatch.phone_number), expires_at=dispatch.expires_at
    )
    return success_response(request=request, data=data)


@router.post(
    "/regenerate-backup-codes", response_model=SuccessEnvelope[BackupCodesResponse] | BackupCodesResponse
)
async def regenerate_backup_codes_route(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    codes = await regenerate_backup_codes(db, user=principal.user, context=get_request_context(request))
    return success_response(request=request, data=BackupCodesResponse(backup_codes=codes))


@router.post("/disable", response_model=SuccessEnvelope[MfaDisabledResponse] | MfaDisabledResponse)
async def disable_route(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, user_id)
    await disable_mfa(db, user=user, context=get_request_context(request))
    return success_response(request=request, data=MfaDisabledResponse(disabled=True))


@router.post("/verify-login", response_model=SuccessEnvelope[LoginResponse] | LoginResponse)
async def verify_login_route(
    request: Request,
    payload: MfaLoginRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Second step of an MFA login; the challenge token stands in for the password.
    outcome = await complete_mfa_login(
        db,
        challenge_token=payload.challenge_token,
        mfa_token=payload.mfa_token,
        device_info=payload.device_info,
        context=get_request_context(request),
    )
    return success_response(request=request, data=login_response(outcome))
