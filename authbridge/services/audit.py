from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from authbridge.core.clock import utc_now
from authbridge.domain.models import ComplianceAuditLog
from authbridge.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

COMPLIANCE_LEVELS = ("low", "medium", "high", "critical")

_SENSITIVE_KEY_PATTERNS = [
    "authorization",
    "token",
    "secret",
    "password",
    "backup_code",
    "mfa_code",
    "private_key",
]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class RequestContext:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_context(request: Request | None) -> RequestContext:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return RequestContext()
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return RequestContext(request_id=request_id, ip_address=ip_address, user_agent=user_agent)


def _build_entry(
    *,
    user_id: int | None,
    action: str,
    compliance_level: str,
    outcome: str,
    resource_type: str | None,
    resource_id: str | None,
    old_values: dict[str, Any] | None,
    new_values: dict[str, Any] | None,
    context: RequestContext | None,
    session_id: str | None,
    metadata: dict[str, Any] | None,
) -> ComplianceAuditLog:
    if compliance_level not in COMPLIANCE_LEVELS:
        raise ValueError(f"Unknown compliance level: {compliance_level}")
    context = context or RequestContext()
    return ComplianceAuditLog(
        audit_id=f"audit_{uuid4().hex}",
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        old_values=sanitize_metadata(old_values) if old_values is not None else None,
        new_values=sanitize_metadata(new_values) if new_values is not None else None,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        session_id=session_id,
        request_id=context.request_id,
        compliance_level=compliance_level,
        outcome=outcome,
        metadata_json=sanitize_metadata(metadata or {}),
        created_at=utc_now(),
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    user_id: int | None,
    action: str,
    compliance_level: str = "low",
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    context: RequestContext | None = None,
    session_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Append audit rows in a best-effort manner to avoid breaking user flows.
    entry = _build_entry(
        user_id=user_id,
        action=action,
        compliance_level=compliance_level,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        old_values=old_values,
        new_values=new_values,
        context=context,
        session_id=session_id,
        metadata=metadata,
    )
    request_id = entry.request_id

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                level = logger.warning if best_effort else logger.error
                level(
                    "audit_event_write_failed action=%s request_id=%s",
                    action,
                    request_id,
                    exc_info=exc,
                )
                if not best_effort:
                    raise
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(entry)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        level = logger.warning if best_effort else logger.error
        level(
            "audit_event_write_failed action=%s request_id=%s",
            action,
            request_id,
            exc_info=exc,
        )
        if not best_effort:
            raise
