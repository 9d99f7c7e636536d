from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import utc_now
from authbridge.core.errors import DatabaseError, ValidationError
from authbridge.domain.models import PrivacyConsent
from authbridge.services.audit import RequestContext, record_event


logger = logging.getLogger(__name__)

CONSENT_TYPES = (
    "terms_of_service",
    "privacy_policy",
    "data_processing",
    "marketing",
    "hipaa_authorization",
)


async def list_consents(session: AsyncSession, user_id: int) -> list[PrivacyConsent]:
    result = await session.execute(
        select(PrivacyConsent).where(PrivacyConsent.user_id == user_id).order_by(PrivacyConsent.consent_type)
    )
    return list(result.scalars().all())


async def _get_consent(session: AsyncSession, *, user_id: int, consent_type: str) -> PrivacyConsent | None:
    result = await session.execute(
        select(PrivacyConsent).where(
            PrivacyConsent.user_id == user_id, PrivacyConsent.consent_type == consent_type
        )
    )
    return result.scalar_one_or_none()


async def record_consent(
    session: AsyncSession,
    *,
    user_id: int,
    consent_type: str,
    granted: bool,
    consent_version: str | None = None,
    context: RequestContext | None = None,
) -> PrivacyConsent:
    """Grant or withdraw one consent type; a repeat call updates the same row."""
    if consent_type not in CONSENT_TYPES:
        raise ValidationError(
            "Unsupported consent type", details={"consent_type": consent_type, "supported": list(CONSENT_TYPES)}
        )
    context = context or RequestContext()
    now = utc_now()
    consent = await _get_consent(session, user_id=user_id, consent_type=consent_type)
    previous = None if consent is None else bool(consent.granted)
    if consent is None:
        try:
            consent = PrivacyConsent(user_id=user_id, consent_type=consent_type)
            session.add(consent)
            await session.flush()
        except IntegrityError:
            await session.rollback()
            consent = await _get_consent(session, user_id=user_id, consent_type=consent_type)
            if consent is None:
                raise DatabaseError("consent insert failed unexpectedly")
    consent.granted = granted
    consent.consent_version = consent_version or consent.consent_version
    consent.ip_address = context.ip_address
    consent.user_agent = context.user_agent
    if granted:
        consent.granted_at = now
        consent.withdrawn_at = None
    else:
        consent.withdrawn_at = now
    await record_event(
        session=session,
        user_id=user_id,
        action="consent_granted" if granted else "consent_withdrawn",
        compliance_level="medium",
        resource_type="privacy_consent",
        resource_id=consent_type,
        old_values={"granted": previous} if previous is not None else None,
        new_values={"granted": granted, "consent_version": consent.consent_version},
        context=context,
    )
    await session.commit()
    return consent
