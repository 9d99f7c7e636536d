from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.apps.api.deps import Principal, get_current_principal, get_db, require_permission
from authbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from authbridge.apps.api.response import SuccessEnvelope, success_response
from authbridge.apps.api.schemas import (
    PermissionOut,
    PermissionsResponse,
    RoleAssignmentRequest,
    RoleAssignmentResponse,
    RoleOut,
    RoleRevokeRequest,
    RolesResponse,
)
from authbridge.core.errors import NotFoundError
from authbridge.persistence.repos.users import get_user
from authbridge.services.audit import get_request_context
from authbridge.services.auth.rbac import (
    assign_role,
    list_permissions,
    list_roles,
    resolve_permissions,
    revoke_role,
)

router = APIRouter(prefix="/auth", tags=["roles"], responses=DEFAULT_ERROR_RESPONSES)


async def _assignment_response(db: AsyncSession, *, user_id: int, role_name: str) -> RoleAssignmentResponse:
    user = await get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    roles, permissions = await resolve_permissions(db, user)
    return RoleAssignmentResponse(user_id=user_id, role_name=role_name, roles=roles, permissions=permissions)


@router.get("/roles", response_model=SuccessEnvelope[RolesResponse] | RolesResponse)
async def roles_route(
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    roles = [RoleOut.model_validate(item) for item in await list_roles(db)]
    return success_response(request=request, data=RolesResponse(roles=roles))


@router.get("/permissions", response_model=SuccessEnvelope[PermissionsResponse] | PermissionsResponse)
async def permissions_route(
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    permissions = [PermissionOut.model_validate(item) for item in await list_permissions(db)]
    return success_response(request=request, data=PermissionsResponse(permissions=permissions))


@router.post(
    "/roles/assign", response_model=SuccessEnvelope[RoleAssignmentResponse] | RoleAssignmentResponse
)
async def assign_role_route(
    request: Request,
    payload: RoleAssignmentRequest,
    principal: Principal = Depends(require_permission("roles:manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await assign_role(
        db,
        user_id=payload.user_id,
        role_name=payload.role_name,
        assigned_by=principal.user_id,
        is_primary=payload.is_primary,
        expires_at=payload.expires_at,
        context=get_request_context(request),
    )
    data = await _assignment_response(db, user_id=payload.user_id, role_name=payload.role_name)
    return success_response(request=request, data=data)


@router.post(
    "/roles/revoke", response_model=SuccessEnvelope[RoleAssignmentResponse] | RoleAssignmentResponse
)
async def revoke_role_route(
    request: Request,
    payload: RoleRevokeRequest,
    principal: Principal = Depends(require_permission("roles:manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await revoke_role(
        db,
        user_id=payload.user_id,
        role_name=payload.role_name,
        revoked_by=principal.user_id,
        context=get_request_context(request),
    )
    data = await _assignment_response(db, user_id=payload.user_id, role_name=payload.role_name)
    return success_response(request=request, data=data)
