from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.errors import AuthenticationError, ForbiddenError, NotFoundError
from authbridge.domain.models import User
from authbridge.persistence.db import get_session
from authbridge.persistence.repos.users import get_user
from authbridge.providers.identity.factory import ProviderContext, get_provider_context
from authbridge.providers.sms.senders import SmsSender, get_sms_sender
from authbridge.services.audit import get_request_context, record_event
from authbridge.services.auth.rbac import has_permission
from authbridge.services.auth.sessions import touch_session
from authbridge.services.auth.tokens import decode_access_token


USERS_MANAGE = "users:manage"
_DISABLED_STATUSES = {"suspended", "deactivated"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_providers() -> ProviderContext:
    # Built once per process; tests override this dependency with fake providers.
    return get_provider_context()


def get_sms() -> SmsSender:
    return get_sms_sender()


class Principal(BaseModel):
    # The authenticated caller behind an access token issued by this service.
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: int
    email: str
    role: str
    provider: str | None = None
    session_id: str | None = None
    user: User = Field(exclude=True)


def parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Missing or invalid bearer token")
    return parts[1]


async def authenticate_access_token(db: AsyncSession, token: str) -> Principal:
    """Resolve an access token to a principal.

    The token must verify, its user must still be allowed in, and the session it
    is bound to must be active; using the session slides its idle clock.
    """
    claims = decode_access_token(token)
    user = await get_user(db, claims.user_id)
    if user is None or user.is_anonymized or user.account_status in _DISABLED_STATUSES:
        raise AuthenticationError("Invalid access token")
    if claims.session_id:
        record = await touch_session(db, claims.session_id)
        if record.user_id != user.id:
            raise AuthenticationError("Invalid access token")
        await db.commit()
    return Principal(
        user_id=user.id,
        email=user.email,
        role=user.role,
        provider=claims.auth_provider,
        session_id=claims.session_id,
        user=user,
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    token = parse_bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise AuthenticationError("Missing or invalid bearer token")
    principal = await authenticate_access_token(db, token)
    request.state.principal_user_id = principal.user_id
    return principal


async def get_optional_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal | None:
    # Endpoints that also accept an MFA challenge token authenticate only when a header is sent.
    if not request.headers.get("Authorization"):
        return None
    return await get_current_principal(request, db)


async def resolve_target_user(db: AsyncSession, principal: Principal, user_id: int | None) -> User:
    # Acting on another user's account requires users:manage.
    if user_id is None or user_id == principal.user_id:
        return principal.user
    if not await has_permission(db, principal.user, USERS_MANAGE):
        raise ForbiddenError("Insufficient permissions", details={"permission": USERS_MANAGE})
    user = await get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def require_permission(permission: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not await has_permission(db, principal.user, permission):
            await record_event(
                session=db,
                user_id=principal.user_id,
                action="access_denied",
                compliance_level="medium",
                outcome="failure",
                resource_type="rbac",
                context=get_request_context(request),
                session_id=principal.session_id,
                metadata={"permission": permission, "path": request.url.path},
                commit=True,
            )
            raise ForbiddenError("Insufficient permissions", details={"permission": permission})
        return principal

    return _dependency
