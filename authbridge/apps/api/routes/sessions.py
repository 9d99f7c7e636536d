from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.apps.api.deps import Principal, get_current_principal, get_db, resolve_target_user
from authbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from authbridge.apps.api.response import SuccessEnvelope, success_response
from authbridge.apps.api.schemas import (
    ActiveSessionsResponse,
    DeviceOut,
    DevicesResponse,
    InvalidateAllRequest,
    InvalidateAllResponse,
    InvalidateSessionRequest,
    InvalidateSessionResponse,
    SessionAnalyticsResponse,
    TrustDeviceRequest,
    session_out,
)
from authbridge.services.audit import get_request_context, record_event
from authbridge.services.auth.sessions import (
    END_FORCE_LOGOUT,
    END_LOGOUT,
    get_active_sessions,
    get_session_analytics,
    invalidate_all_sessions,
    invalidate_session,
    list_devices,
    trust_device,
)

router = APIRouter(prefix="/auth/sessions", tags=["sessions"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/active", response_model=SuccessEnvelope[ActiveSessionsResponse] | ActiveSessionsResponse)
async def active_sessions(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    current_session_id: str | None = Query(default=None, alias="currentSessionId"),
    exclude_current: bool = Query(default=False, alias="excludeCurrent"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, user_id)
    current = current_session_id or principal.session_id
    records = await get_active_sessions(
        db, user_id=user.id, exclude_session_id=current if exclude_current else None
    )
    sessions = [session_out(record, current_session_id=current) for record in records]
    return success_response(
        request=request, data=ActiveSessionsResponse(sessions=sessions, total=len(sessions))
    )


@router.post(
    "/invalidate", response_model=SuccessEnvelope[InvalidateSessionResponse] | InvalidateSessionResponse
)
async def invalidate_route(
    request: Request,
    payload: InvalidateSessionRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, payload.user_id)
    await record_event(
        session=db,
        user_id=user.id,
        action="session_invalidated",
        compliance_level="low",
        resource_type="session",
        resource_id=payload.session_id,
        session_id=principal.session_id,
        context=get_request_context(request),
        metadata={"performed_by": principal.user_id},
    )
    invalidated = await invalidate_session(
        db, user_id=user.id, session_id=payload.session_id, reason=END_LOGOUT
    )
    return success_response(request=request, data=InvalidateSessionResponse(invalidated=invalidated))


@router.post(
    "/invalidate-all", response_model=SuccessEnvelope[InvalidateAllResponse] | InvalidateAllResponse
)
async def invalidate_all_route(
    request: Request,
    payload: InvalidateAllRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, payload.user_id)
    # "Sign out everywhere else" keeps the caller's own session.
    exclude = principal.session_id if payload.keep_current and user.id == principal.user_id else None
    await record_event(
        session=db,
        user_id=user.id,
        action="sessions_invalidated_all",
        compliance_level="medium",
        resource_type="session",
        session_id=principal.session_id,
        context=get_request_context(request),
        metadata={"performed_by": principal.user_id, "kept_session": exclude},
    )
    ended = await invalidate_all_sessions(
        db, user_id=user.id, reason=END_FORCE_LOGOUT, exclude_session_id=exclude
    )
    return success_response(request=request, data=InvalidateAllResponse(sessions_ended=ended))


@router.post("/trust-device", response_model=SuccessEnvelope[DeviceOut] | DeviceOut)
async def trust_device_route(
    request: Request,
    payload: TrustDeviceRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, payload.user_id)
    await record_event(
        session=db,
        user_id=user.id,
        action="device_trusted",
        compliance_level="medium",
        resource_type="device",
        resource_id=payload.device_hash,
        session_id=principal.session_id,
        context=get_request_context(request),
    )
    device = await trust_device(db, user_id=user.id, device_hash=payload.device_hash)
    return success_response(request=request, data=DeviceOut.model_validate(device))


@router.get("/devices", response_model=SuccessEnvelope[DevicesResponse] | DevicesResponse)
async def devices_route(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, user_id)
    devices = [DeviceOut.model_validate(device) for device in await list_devices(db, user.id)]
    return success_response(request=request, data=DevicesResponse(devices=devices))


@router.get(
    "/analytics", response_model=SuccessEnvelope[SessionAnalyticsResponse] | SessionAnalyticsResponse
)
async def analytics_route(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    days: int = Query(default=30, ge=1, le=365),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, user_id)
    analytics = await get_session_analytics(db, user_id=user.id, days=days)
    return success_response(request=request, data=SessionAnalyticsResponse.model_validate(analytics))
