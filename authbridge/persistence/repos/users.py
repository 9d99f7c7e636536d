from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.domain.models import ProviderMapping, User


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_user(session: AsyncSession, user_id: int) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_user_by_provider_uid(
    session: AsyncSession, *, provider_type: str, provider_uid: str
) -> User | None:
    # (provider_type, provider_uid) is unique, so at most one user matches.
    result = await session.execute(
        select(User)
        .join(ProviderMapping, ProviderMapping.user_id == User.id)
        .where(
            ProviderMapping.provider_type == provider_type,
            ProviderMapping.provider_uid == provider_uid,
        )
    )
    return result.scalar_one_or_none()


async def get_mapping(
    session: AsyncSession, *, user_id: int, provider_type: str
) -> ProviderMapping | None:
    result = await session.execute(
        select(ProviderMapping).where(
            ProviderMapping.user_id == user_id,
            ProviderMapping.provider_type == provider_type,
        )
    )
    return result.scalar_one_or_none()


async def list_mappings(session: AsyncSession, user_id: int) -> list[ProviderMapping]:
    result = await session.execute(
        select(ProviderMapping)
        .where(ProviderMapping.user_id == user_id)
        .order_by(ProviderMapping.is_primary.desc(), ProviderMapping.id)
    )
    return list(result.scalars().all())


async def find_duplicate(
    session: AsyncSession, *, email: str | None, phone_number: str | None
) -> User | None:
    # Match on either identifier; registration must reject both kinds of duplicate.
    clauses = []
    if email:
        clauses.append(User.email == normalize_email(email))
    if phone_number:
        clauses.append(User.phone_number == phone_number)
    if not clauses:
        return None
    result = await session.execute(select(User).where(or_(*clauses)).limit(1))
    return result.scalar_one_or_none()
