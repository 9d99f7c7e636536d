from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from authbridge.core.clock import utc_now
from authbridge.core.errors import NotFoundError, ValidationError
from authbridge.domain.models import Permission, Role, RolePermission, User, UserRole
from authbridge.persistence.db import SessionLocal
from authbridge.services.auth.rbac import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLES,
    _split_permission,
    assign_role,
    has_permission,
    list_roles,
    resolve_permissions,
    revoke_role,
    seed_default_roles,
)
from authbridge.tests.utils.auth import create_test_user, seed_roles


def test_permission_names_split_into_resource_and_action() -> None:
    assert _split_permission("sessions:manage") == ("sessions", "manage")
    with pytest.raises(ValidationError):
        _split_permission("sessions")


async def _custom_roles() -> None:
    # Two overlapping roles so the union is observable.
    async with SessionLocal() as session:
        perms = {
            name: Permission(name=name, resource=name.split(":")[0], action=name.split(":")[1])
            for name in ("a:read", "shared:read", "b:write")
        }
        session.add_all(perms.values())
        role_a = Role(name="role_a", display_name="A")
        role_b = Role(name="role_b", display_name="B")
        session.add_all([role_a, role_b])
        await session.flush()
        session.add_all(
            [
                RolePermission(role_id=role_a.id, permission_id=perms["a:read"].id),
                RolePermission(role_id=role_a.id, permission_id=perms["shared:read"].id),
                RolePermission(role_id=role_b.id, permission_id=perms["shared:read"].id),
                RolePermission(role_id=role_b.id, permission_id=perms["b:write"].id),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_permissions_are_union_of_roles() -> None:
    await _custom_roles()
    user_id = await create_test_user(email="union@example.com", role="role_a", extra_roles=["role_b"])
    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        roles, permissions = await resolve_permissions(session, user)
        assert roles == ["role_a", "role_b"]
        assert permissions == ["a:read", "b:write", "shared:read"]
        assert await has_permission(session, user, "b:write") is True
        assert await has_permission(session, user, "c:delete") is False


@pytest.mark.asyncio
async def test_expired_assignment_is_ignored() -> None:
    await _custom_roles()
    user_id = await create_test_user(email="expired-role@example.com", role="role_a")
    async with SessionLocal() as session:
        role_b = (await session.execute(select(Role).where(Role.name == "role_b"))).scalar_one()
        session.add(
            UserRole(user_id=user_id, role_id=role_b.id, expires_at=utc_now() - timedelta(minutes=1))
        )
        await session.commit()
    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        roles, permissions = await resolve_permissions(session, user)
    assert roles == ["role_a"]
    assert "b:write" not in permissions


@pytest.mark.asyncio
async def test_unknown_coarse_role_resolves_to_nothing() -> None:
    user_id = await create_test_user(email="norole@example.com", role="ghost")
    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        assert await resolve_permissions(session, user) == ([], [])


@pytest.mark.asyncio
async def test_seed_is_idempotent() -> None:
    async with SessionLocal() as session:
        first = await seed_default_roles(session)
        second = await seed_default_roles(session)
        roles = await list_roles(session)
    assert first["roles"] == len(DEFAULT_ROLES)
    assert first["permissions"] == len(DEFAULT_PERMISSIONS)
    assert second == {"roles": 0, "permissions": 0, "grants": 0}
    by_name = {item["name"]: item for item in roles}
    assert "roles:manage" in by_name["admin"]["permissions"]
    assert set(by_name["superadmin"]["permissions"]) == set(DEFAULT_PERMISSIONS)


@pytest.mark.asyncio
async def test_assign_and_revoke_role() -> None:
    await seed_roles()
    user_id = await create_test_user(email="assign@example.com")
    async with SessionLocal() as session:
        await assign_role(session, user_id=user_id, role_name="therapist", assigned_by=None, is_primary=True)
        user = await session.get(User, user_id)
        await session.refresh(user)
        roles, permissions = await resolve_permissions(session, user)
    assert user.role == "therapist"
    assert "therapist" in roles
    assert "appointments:manage" in permissions

    async with SessionLocal() as session:
        await revoke_role(session, user_id=user_id, role_name="therapist", revoked_by=None)
        with pytest.raises(NotFoundError):
            await revoke_role(session, user_id=user_id, role_name="therapist", revoked_by=None)
        with pytest.raises(NotFoundError):
            await assign_role(session, user_id=user_id, role_name="missing", assigned_by=None)
