from __future__ import annotations

import pytest
from sqlalchemy import select

from authbridge.core.errors import ForbiddenError, NotFoundError, ValidationError
from authbridge.domain.models import ComplianceAuditLog, ProviderMapping, User, UserSession
from authbridge.persistence.db import SessionLocal
from authbridge.services.audit import RequestContext
from authbridge.services.auth.reconciliation import ensure_login_allowed
from authbridge.services.auth.sessions import create_session
from authbridge.services.compliance import (
    anonymize_user,
    create_data_request,
    list_consents,
    list_data_requests,
    record_consent,
)
from authbridge.tests.utils.auth import create_test_user


@pytest.mark.asyncio
async def test_consent_grant_then_withdraw_updates_one_row() -> None:
    user_id = await create_test_user(email="consent@example.com")
    context = RequestContext(ip_address="10.1.1.1", user_agent="pytest")
    async with SessionLocal() as session:
        granted = await record_consent(
            session, user_id=user_id, consent_type="privacy_policy", granted=True, consent_version="v2", context=context
        )
        assert granted.granted is True
        withdrawn = await record_consent(session, user_id=user_id, consent_type="privacy_policy", granted=False)
        consents = await list_consents(session, user_id)
        audit = (
            await session.execute(select(ComplianceAuditLog).order_by(ComplianceAuditLog.id))
        ).scalars().all()
    assert len(consents) == 1
    assert withdrawn.withdrawn_at is not None
    assert withdrawn.consent_version == "v2"
    assert [row.action for row in audit] == ["consent_granted", "consent_withdrawn"]
    assert audit[1].old_values == {"granted": True}


@pytest.mark.asyncio
async def test_unknown_consent_type_is_rejected() -> None:
    user_id = await create_test_user(email="consent-bad@example.com")
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await record_consent(session, user_id=user_id, consent_type="cookies", granted=True)


@pytest.mark.asyncio
async def test_data_requests_are_queued_pending() -> None:
    user_id = await create_test_user(email="export@example.com")
    async with SessionLocal() as session:
        request = await create_data_request(session, user_id=user_id, request_type="export", reason="audit")
        with pytest.raises(ValidationError):
            await create_data_request(session, user_id=user_id, request_type="print")
        requests = await list_data_requests(session, user_id)
    assert request.status == "pending"
    assert request.request_id.startswith("export_")
    assert [item.request_id for item in requests] == [request.request_id]


@pytest.mark.asyncio
async def test_anonymize_scrubs_pii_and_ends_sessions() -> None:
    user_id = await create_test_user(email="forget@example.com")
    async with SessionLocal() as session:
        await create_session(
            session,
            user_id=user_id,
            device_hash=None,
            ip_address="10.0.0.1",
            user_agent="pytest",
            device_info=None,
            auth_provider="cognito",
        )
        await create_data_request(session, user_id=user_id, request_type="anonymize")

    async with SessionLocal() as session:
        user = await anonymize_user(session, user_id=user_id, reason="user request", performed_by=None)
        again = await anonymize_user(session, user_id=user_id, reason="again", performed_by=None)
    assert again.anonymization_reason == "user request"
    assert user.email == f"anonymized_{user_id}@anonymized.invalid"
    assert user.first_name is None
    assert user.account_status == "deactivated"

    async with SessionLocal() as session:
        mapping = (await session.execute(select(ProviderMapping))).scalar_one()
        active = (
            await session.execute(select(UserSession).where(UserSession.is_active.is_(True)))
        ).scalars().all()
        requests = await list_data_requests(session, user_id)
        stored = await session.get(User, user_id)
    assert mapping.provider_email is None
    assert active == []
    assert requests[0].status == "completed"
    with pytest.raises(ForbiddenError):
        ensure_login_allowed(stored)


@pytest.mark.asyncio
async def test_anonymize_unknown_user_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await anonymize_user(session, user_id=9999, reason=None, performed_by=None)
