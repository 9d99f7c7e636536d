from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    require_permission,
    resolve_target_user,
)
from authbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from authbridge.apps.api.response import SuccessEnvelope, success_response
from authbridge.apps.api.schemas import (
    AnonymizeRequest,
    AnonymizeResponse,
    AuditEntryOut,
    AuditTrailResponse,
    ConsentOut,
    ConsentRequest,
    ConsentsResponse,
    DataRequestCreate,
    DataRequestOut,
    DataRequestsResponse,
)
from authbridge.core.errors import ForbiddenError
from authbridge.persistence.repos.audit import DEFAULT_LIMIT, MAX_LIMIT, search_audit_trail
from authbridge.services.audit import get_request_context
from authbridge.services.auth.rbac import has_permission
from authbridge.services.compliance import (
    anonymize_user,
    create_data_request,
    list_consents,
    list_data_requests,
    record_consent,
)

router = APIRouter(prefix="/auth/compliance", tags=["compliance"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/consents", response_model=SuccessEnvelope[ConsentsResponse] | ConsentsResponse)
async def consents_route(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, user_id)
    consents = [ConsentOut.model_validate(row) for row in await list_consents(db, user.id)]
    return success_response(request=request, data=ConsentsResponse(consents=consents))


@router.post("/consent", response_model=SuccessEnvelope[ConsentOut] | ConsentOut)
async def consent_route(
    request: Request,
    payload: ConsentRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Consent is always recorded for the caller; nobody grants consent on another's behalf.
    consent = await record_consent(
        db,
        user_id=principal.user_id,
        consent_type=payload.consent_type,
        granted=payload.granted,
        consent_version=payload.consent_version,
        context=get_request_context(request),
    )
    return success_response(request=request, data=ConsentOut.model_validate(consent))


@router.get("/audit-trail", response_model=SuccessEnvelope[AuditTrailResponse] | AuditTrailResponse)
async def audit_trail_route(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    action: str | None = Query(default=None),
    resource_type: str | None = Query(default=None, alias="resourceType"),
    compliance_level: str | None = Query(default=None, alias="complianceLevel"),
    start: datetime | None = Query(default=None, alias="startDate"),
    end: datetime | None = Query(default=None, alias="endDate"),
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    target_id = principal.user_id if user_id is None else user_id
    if target_id != principal.user_id and not await has_permission(db, principal.user, "audit:read"):
        raise ForbiddenError("Insufficient permissions", details={"permission": "audit:read"})
    rows = await search_audit_trail(
        db,
        user_id=target_id,
        action=action,
        resource_type=resource_type,
        compliance_level=compliance_level,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    entries = [
        AuditEntryOut(
            audit_id=row.audit_id,
            user_id=row.user_id,
            action=row.action,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            compliance_level=row.compliance_level,
            outcome=row.outcome,
            ip_address=row.ip_address,
            session_id=row.session_id,
            request_id=row.request_id,
            metadata=row.metadata_json,
            created_at=row.created_at,
        )
        for row in rows
    ]
    return success_response(
        request=request, data=AuditTrailResponse(entries=entries, limit=limit, offset=offset)
    )


@router.post(
    "/data-export-request",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[DataRequestOut] | DataRequestOut,
)
async def data_export_request_route(
    request: Request,
    payload: DataRequestCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data_request = await create_data_request(
        db,
        user_id=principal.user_id,
        request_type=payload.request_type,
        reason=payload.reason,
        context=get_request_context(request),
    )
    return success_response(request=request, data=DataRequestOut.model_validate(data_request))


@router.get("/data-requests", response_model=SuccessEnvelope[DataRequestsResponse] | DataRequestsResponse)
async def data_requests_route(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await resolve_target_user(db, principal, user_id)
    requests = [DataRequestOut.model_validate(row) for row in await list_data_requests(db, user.id)]
    return success_response(request=request, data=DataRequestsResponse(requests=requests))


@router.post("/anonymize", response_model=SuccessEnvelope[AnonymizeResponse] | AnonymizeResponse)
async def anonymize_route(
    request: Request,
    payload: AnonymizeRequest,
    principal: Principal = Depends(require_permission("compliance:manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await anonymize_user(
        db,
        user_id=payload.user_id,
        reason=payload.reason,
        performed_by=principal.user_id,
        context=get_request_context(request),
    )
    return success_response(request=request, data=AnonymizeResponse(user_id=user.id, anonymized=True))
