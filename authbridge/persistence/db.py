from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from authbridge.core.config import Settings, get_settings


# SQLite serializes writers; concurrent refresh and first-login races wait on the file lock.
_SQLITE_BUSY_TIMEOUT_S = 30


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        options["connect_args"] = {"timeout": _SQLITE_BUSY_TIMEOUT_S}
        return options
    # Login bursts hold a connection per request; keep the pool bounded and recycled.
    options.update(
        pool_size=max(1, int(settings.api_db_pool_size)),
        max_overflow=max(0, int(settings.api_db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


settings = get_settings()
engine = create_async_engine(settings.database_url, **_engine_options(settings))
# Rows stay readable after commit; flows return users and sessions past their transaction.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    """Connection pool counters reported by /health.

    SQLite test pools do not implement every counter; missing ones are None.
    """
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for name, attr in (
        ("size", "size"),
        ("checked_out", "checkedout"),
        ("checked_in", "checkedin"),
        ("overflow", "overflow"),
    ):
        counter = getattr(pool, attr, None)
        stats[name] = int(counter()) if callable(counter) else None
    return stats
