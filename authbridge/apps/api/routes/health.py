from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.apps.api.deps import get_db, get_providers
from authbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from authbridge.apps.api.response import SuccessEnvelope, success_response
from authbridge.apps.api.schemas import HealthResponse, ProviderHealthOut
from authbridge.core.config import get_settings
from authbridge.persistence.db import pool_stats
from authbridge.providers.identity.factory import ProviderContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


# Allow legacy unwrapped responses while v1 middleware wraps them into envelopes.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: ProviderContext = Depends(get_providers),
) -> dict:
    # Degraded when the database is unreachable or no identity provider can serve logins.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unavailable", exc_info=exc)
        database = "unavailable"
    statuses = [ProviderHealthOut.model_validate(item) for item in await providers.health()]
    healthy = database == "ok" and any(item.available for item in statuses)
    payload = HealthResponse(
        status="ok" if healthy else "degraded",
        environment=get_settings().environment,
        database=database,
        database_pool=pool_stats(),
        providers=statuses,
    )
    return success_response(request=request, data=payload)
