from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import utc_now
from authbridge.core.errors import NotFoundError, ValidationError
from authbridge.domain.models import DataRequest, ProviderMapping, User, UserMfaSettings
from authbridge.services.audit import RequestContext, record_event
from authbridge.services.auth.sessions import END_FORCE_LOGOUT, invalidate_all_sessions


logger = logging.getLogger(__name__)

REQUEST_TYPES = ("export", "delete", "anonymize")


async def create_data_request(
    session: AsyncSession,
    *,
    user_id: int,
    request_type: str = "export",
    reason: str | None = None,
    context: RequestContext | None = None,
) -> DataRequest:
    # Requests are queued as pending; fulfilment happens outside the request path.
    if request_type not in REQUEST_TYPES:
        raise ValidationError("Unsupported request type", details={"request_type": request_type})
    request = DataRequest(
        request_id=f"{request_type}_{uuid4().hex}",
        user_id=user_id,
        request_type=request_type,
        status="pending",
        reason=reason,
        requested_at=utc_now(),
    )
    session.add(request)
    await record_event(
        session=session,
        user_id=user_id,
        action="data_request_created",
        compliance_level="high",
        resource_type="data_request",
        resource_id=request.request_id,
        new_values={"request_type": request_type, "status": "pending"},
        context=context,
    )
    await session.commit()
    logger.info("data_request_created user_id=%s type=%s", user_id, request_type)
    return request


async def list_data_requests(session: AsyncSession, user_id: int) -> list[DataRequest]:
    result = await session.execute(
        select(DataRequest).where(DataRequest.user_id == user_id).order_by(DataRequest.requested_at.desc())
    )
    return list(result.scalars().all())


async def anonymize_user(
    session: AsyncSession,
    *,
    user_id: int,
    reason: str | None,
    performed_by: int | None,
    context: RequestContext | None = None,
) -> User:
    """Replace a user's PII in place and shut the account.

    The row survives so audit references stay valid; sessions, refresh
    tokens and second factors are revoked.
    """
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    if user.is_anonymized:
        return user
    now = utc_now()
    user.email = f"anonymized_{user.id}@anonymized.invalid"
    user.first_name = None
    user.last_name = None
    user.phone_number = None
    user.account_status = "deactivated"
    user.mfa_enabled = False
    user.is_anonymized = True
    user.anonymized_at = now
    user.anonymization_reason = reason
    await session.execute(
        update(ProviderMapping).where(ProviderMapping.user_id == user_id).values(provider_email=None)
    )
    await session.execute(
        update(UserMfaSettings)
        .where(UserMfaSettings.user_id == user_id)
        .values(
            totp_secret=None,
            totp_enabled=False,
            sms_phone_number=None,
            sms_enabled=False,
            backup_codes=[],
        )
    )
    await session.execute(
        update(DataRequest)
        .where(
            DataRequest.user_id == user_id,
            DataRequest.request_type == "anonymize",
            DataRequest.status == "pending",
        )
        .values(status="completed", completed_at=now)
    )
    await record_event(
        session=session,
        user_id=user_id,
        action="user_anonymized",
        compliance_level="critical",
        resource_type="user",
        resource_id=str(user_id),
        metadata={"performed_by": performed_by, "reason": reason},
        context=context,
    )
    # Commits the PII changes together with the session and token revocation.
    await invalidate_all_sessions(session, user_id=user_id, reason=END_FORCE_LOGOUT)
    logger.warning("user_anonymized user_id=%s by=%s", user_id, performed_by)
    return user
