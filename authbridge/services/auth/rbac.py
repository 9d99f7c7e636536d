from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.errors import NotFoundError, ValidationError
from authbridge.core.clock import utc_now
from authbridge.domain.models import Permission, Role, RolePermission, User, UserRole
from authbridge.services.audit import RequestContext, record_event


logger = logging.getLogger(__name__)

DEFAULT_PERMISSIONS: dict[str, str] = {
    "profile:read": "Read own profile",
    "profile:update": "Update own profile",
    "sessions:manage": "List and end own sessions",
    "mfa:manage": "Configure own second factors",
    "compliance:read": "Read own consents and audit trail",
    "appointments:read": "Read appointments",
    "appointments:manage": "Create and change appointments",
    "clients:read": "Read assigned client records",
    "users:read": "Read any user",
    "users:manage": "Act on behalf of any user",
    "roles:manage": "Assign and revoke roles",
    "audit:read": "Read any user's audit trail",
    "compliance:manage": "Process data subject requests",
}

_SELF_SERVICE = [
    "profile:read",
    "profile:update",
    "sessions:manage",
    "mfa:manage",
    "compliance:read",
]

DEFAULT_ROLES: dict[str, tuple[str, str, list[str]]] = {
    "client": ("Client", "Person receiving care", _SELF_SERVICE + ["appointments:read"]),
    "therapist": (
        "Therapist",
        "Licensed provider",
        _SELF_SERVICE + ["appointments:read", "appointments:manage", "clients:read"],
    ),
    "admin": (
        "Administrator",
        "Operations staff",
        _SELF_SERVICE + ["users:read", "users:manage", "roles:manage", "audit:read"],
    ),
    "superadmin": ("Super administrator", "Full access", list(DEFAULT_PERMISSIONS)),
}


def _split_permission(name: str) -> tuple[str, str]:
    resource, _, action = name.partition(":")
    if not resource or not action:
        raise ValidationError("Permission names use resource:action", details={"permission": name})
    return resource, action


async def resolve_roles(session: AsyncSession, user: User) -> list[str]:
    # Active assignments plus the coarse role column when a matching role exists.
    now = utc_now()
    result = await session.execute(
        select(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(
            UserRole.user_id == user.id,
            or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
        )
    )
    names = set(result.scalars().all())
    if user.role and user.role not in names:
        coarse = await session.execute(select(Role.name).where(Role.name == user.role))
        if coarse.scalar_one_or_none() is not None:
            names.add(user.role)
    return sorted(names)


async def resolve_permissions(session: AsyncSession, user: User) -> tuple[list[str], list[str]]:
    """Return the user's roles and the de-duplicated union of their permissions."""
    roles = await resolve_roles(session, user)
    if not roles:
        return roles, []
    result = await session.execute(
        select(Permission.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(Role, Role.id == RolePermission.role_id)
        .where(Role.name.in_(roles))
    )
    return roles, sorted(set(result.scalars().all()))


async def has_permission(session: AsyncSession, user: User, permission: str) -> bool:
    _, permissions = await resolve_permissions(session, user)
    return permission in permissions


async def _get_role(session: AsyncSession, role_name: str) -> Role:
    result = await session.execute(select(Role).where(Role.name == role_name))
    role = result.scalar_one_or_none()
    if role is None:
        raise NotFoundError("Role not found", details={"role": role_name})
    return role


async def assign_role(
    session: AsyncSession,
    *,
    user_id: int,
    role_name: str,
    assigned_by: int | None,
    is_primary: bool = False,
    expires_at: datetime | None = None,
    context: RequestContext | None = None,
) -> UserRole:
    # Re-assigning an existing role refreshes its flags and expiry.
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    role = await _get_role(session, role_name)
    result = await session.execute(
        select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role.id)
    )
    assignment = result.scalar_one_or_none()
    if assignment is None:
        assignment = UserRole(user_id=user_id, role_id=role.id, assigned_at=utc_now())
        session.add(assignment)
    assignment.is_primary = is_primary
    assignment.assigned_by = assigned_by
    assignment.expires_at = expires_at
    if is_primary:
        user.role = role.name
    await record_event(
        session=session,
        user_id=user_id,
        action="role_assigned",
        compliance_level="high",
        resource_type="role",
        resource_id=role.name,
        new_values={"role": role.name, "is_primary": is_primary, "assigned_by": assigned_by},
        context=context,
    )
    await session.commit()
    logger.info("role_assigned user_id=%s role=%s by=%s", user_id, role.name, assigned_by)
    return assignment


async def revoke_role(
    session: AsyncSession,
    *,
    user_id: int,
    role_name: str,
    revoked_by: int | None,
    context: RequestContext | None = None,
) -> None:
    role = await _get_role(session, role_name)
    result = await session.execute(
        delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role.id)
    )
    if not result.rowcount:
        raise NotFoundError("Role is not assigned", details={"user_id": user_id, "role": role_name})
    await record_event(
        session=session,
        user_id=user_id,
        action="role_revoked",
        compliance_level="high",
        resource_type="role",
        resource_id=role.name,
        old_values={"role": role.name},
        metadata={"revoked_by": revoked_by},
        context=context,
    )
    await session.commit()
    logger.info("role_revoked user_id=%s role=%s by=%s", user_id, role.name, revoked_by)


async def list_roles(session: AsyncSession) -> list[dict[str, Any]]:
    roles = (await session.execute(select(Role).order_by(Role.name))).scalars().all()
    pairs = (
        await session.execute(
            select(RolePermission.role_id, Permission.name).join(
                Permission, Permission.id == RolePermission.permission_id
            )
        )
    ).all()
    by_role: dict[int, list[str]] = {}
    for role_id, permission_name in pairs:
        by_role.setdefault(role_id, []).append(permission_name)
    return [
        {
            "name": role.name,
            "displayName": role.display_name,
            "description": role.description,
            "permissions": sorted(by_role.get(role.id, [])),
        }
        for role in roles
    ]


async def list_permissions(session: AsyncSession) -> list[Permission]:
    result = await session.execute(select(Permission).order_by(Permission.resource, Permission.action))
    return list(result.scalars().all())


async def seed_default_roles(session: AsyncSession) -> dict[str, int]:
    """Create missing default roles, permissions and grants; existing rows are left alone."""
    created = {"roles": 0, "permissions": 0, "grants": 0}
    permissions: dict[str, Permission] = {
        item.name: item for item in (await session.execute(select(Permission))).scalars().all()
    }
    for name, description in DEFAULT_PERMISSIONS.items():
        if name in permissions:
            continue
        resource, action = _split_permission(name)
        permission = Permission(name=name, resource=resource, action=action, description=description)
        session.add(permission)
        permissions[name] = permission
        created["permissions"] += 1

    roles: dict[str, Role] = {item.name: item for item in (await session.execute(select(Role))).scalars().all()}
    for name, (display_name, description, _) in DEFAULT_ROLES.items():
        if name in roles:
            continue
        role = Role(name=name, display_name=display_name, description=description)
        session.add(role)
        roles[name] = role
        created["roles"] += 1
    await session.flush()

    existing = {
        (role_id, permission_id)
        for role_id, permission_id in (
            await session.execute(select(RolePermission.role_id, RolePermission.permission_id))
        ).all()
    }
    for name, (_, _, granted) in DEFAULT_ROLES.items():
        role = roles[name]
        for permission_name in granted:
            key = (role.id, permissions[permission_name].id)
            if key in existing:
                continue
            session.add(RolePermission(role_id=key[0], permission_id=key[1]))
            existing.add(key)
            created["grants"] += 1
    await session.commit()
    return created
