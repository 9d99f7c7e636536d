from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_providers,
    parse_bearer_token,
)
from authbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from authbridge.apps.api.response import SuccessEnvelope, success_response
from authbridge.apps.api.schemas import (
    CheckDuplicateRequest,
    CheckDuplicateResponse,
    ConfirmRequest,
    ConfirmResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
    login_response,
    tokens_out,
    user_out,
)
from authbridge.core.errors import AuthenticationError
from authbridge.providers.identity.factory import ProviderContext
from authbridge.services.audit import get_request_context
from authbridge.services.auth.login import LoginAttempt, login, logout
from authbridge.services.auth.rbac import resolve_permissions
from authbridge.services.auth.registration import (
    Registration,
    check_duplicate,
    confirm,
    forgot_password,
    register,
    resend_code,
    reset_password,
)
from authbridge.services.auth.tokens import refresh_tokens

router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/login", response_model=SuccessEnvelope[LoginResponse] | LoginResponse)
async def login_route(
    request: Request,
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    # A 200 with requiresMFA is a pending second step, not a failure.
    outcome = await login(
        db,
        providers=providers,
        attempt=LoginAttempt(
            email=payload.email,
            password=payload.password,
            id_token=payload.id_token,
            provider=payload.provider,
            mfa_token=payload.mfa_token,
            device_info=payload.device_info,
            remember_me=payload.remember_me,
        ),
        context=get_request_context(request),
    )
    return success_response(request=request, data=login_response(outcome))


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[RegisterResponse] | RegisterResponse,
)
async def register_route(
    request: Request,
    payload: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    result = await register(
        db,
        providers=providers,
        registration=Registration(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=payload.role,
            phone_number=payload.phone_number,
            country_code=payload.country_code,
            provider=payload.provider,
        ),
        context=get_request_context(request),
    )
    data = RegisterResponse(
        user=user_out(result.user), requires_verification=True, provider=result.provider_type
    )
    return success_response(request=request, data=data)


@router.post("/confirm", response_model=SuccessEnvelope[ConfirmResponse] | ConfirmResponse)
async def confirm_route(
    request: Request,
    payload: ConfirmRequest,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    user = await confirm(
        db,
        providers=providers,
        email=payload.email,
        code=payload.code,
        provider_hint=payload.provider,
        context=get_request_context(request),
    )
    data = ConfirmResponse(verified=True, user=user_out(user) if user else None)
    return success_response(request=request, data=data)


@router.post("/resend-code", response_model=SuccessEnvelope[MessageResponse] | MessageResponse)
async def resend_code_route(
    request: Request,
    payload: EmailRequest,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    provider_type = await resend_code(
        db,
        providers=providers,
        email=payload.email,
        provider_hint=payload.provider,
        context=get_request_context(request),
    )
    data = MessageResponse(message="If the account exists, a new code has been sent", provider=provider_type)
    return success_response(request=request, data=data)


@router.post("/forgot-password", response_model=SuccessEnvelope[MessageResponse] | MessageResponse)
async def forgot_password_route(
    request: Request,
    payload: EmailRequest,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    provider_type = await forgot_password(
        db,
        providers=providers,
        email=payload.email,
        provider_hint=payload.provider,
        context=get_request_context(request),
    )
    data = MessageResponse(message="If the account exists, a reset code has been sent", provider=provider_type)
    return success_response(request=request, data=data)


@router.post(
    "/reset-password", response_model=SuccessEnvelope[ResetPasswordResponse] | ResetPasswordResponse
)
async def reset_password_route(
    request: Request,
    payload: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    result = await reset_password(
        db,
        providers=providers,
        email=payload.email,
        code=payload.code,
        new_password=payload.new_password,
        provider_hint=payload.provider,
        context=get_request_context(request),
    )
    data = ResetPasswordResponse(
        message="Password changed successfully",
        provider=result["provider"],
        sessions_ended=result["sessionsEnded"],
    )
    return success_response(request=request, data=data)


@router.post("/refresh", response_model=SuccessEnvelope[RefreshResponse] | RefreshResponse)
async def refresh_route(
    request: Request,
    payload: RefreshRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Reusing a rotated token answers 403 and ends every session of the user.
    result = await refresh_tokens(
        db, refresh_token=payload.refresh_token, context=get_request_context(request)
    )
    data = RefreshResponse(tokens=tokens_out(result.tokens), session_id=result.session_id)
    return success_response(request=request, data=data)


@router.post("/logout", response_model=SuccessEnvelope[LogoutResponse] | LogoutResponse)
async def logout_route(
    request: Request,
    payload: LogoutRequest,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    access_token = payload.access_token or parse_bearer_token(request.headers.get("Authorization"))
    if not access_token:
        raise AuthenticationError("Access token is required")
    ended = await logout(
        db,
        providers=providers,
        access_token=access_token,
        user_id=payload.user_id,
        context=get_request_context(request),
    )
    return success_response(request=request, data=LogoutResponse(logged_out=True, sessions_ended=ended))


@router.post(
    "/check-duplicate", response_model=SuccessEnvelope[CheckDuplicateResponse] | CheckDuplicateResponse
)
async def check_duplicate_route(
    request: Request,
    payload: CheckDuplicateRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    await check_duplicate(
        db,
        email=payload.email,
        phone_number=payload.phone_number,
        country_code=payload.country_code,
    )
    return success_response(request=request, data=CheckDuplicateResponse(available=True))


@router.get("/me", response_model=SuccessEnvelope[MeResponse] | MeResponse)
async def me_route(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    roles, permissions = await resolve_permissions(db, principal.user)
    data = MeResponse(
        user=user_out(principal.user, roles=roles, permissions=permissions),
        session_id=principal.session_id,
        provider=principal.provider,
    )
    return success_response(request=request, data=data)
