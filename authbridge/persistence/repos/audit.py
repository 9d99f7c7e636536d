from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.domain.models import ComplianceAuditLog


DEFAULT_LIMIT = 100
MAX_LIMIT = 500


async def search_audit_trail(
    session: AsyncSession,
    *,
    user_id: int | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    compliance_level: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = DEFAULT_LIMIT,
    offset: int = 0,
) -> list[ComplianceAuditLog]:
    # Newest first; limit is clamped so a single query stays bounded.
    query = select(ComplianceAuditLog)
    if user_id is not None:
        query = query.where(ComplianceAuditLog.user_id == user_id)
    if action:
        query = query.where(ComplianceAuditLog.action == action)
    if resource_type:
        query = query.where(ComplianceAuditLog.resource_type == resource_type)
    if compliance_level:
        query = query.where(ComplianceAuditLog.compliance_level == compliance_level)
    if start is not None:
        query = query.where(ComplianceAuditLog.created_at >= start)
    if end is not None:
        query = query.where(ComplianceAuditLog.created_at <= end)
    bounded = max(1, min(int(limit), MAX_LIMIT))
    query = (
        query.order_by(ComplianceAuditLog.created_at.desc(), ComplianceAuditLog.id.desc())
        .limit(bounded)
        .offset(max(0, int(offset)))
    )
    result = await session.execute(query)
    return list(result.scalars().all())
