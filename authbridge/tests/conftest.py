from __future__ import annotations

import os
import tempfile

# Settings and the engine are read at import time; point them at a throwaway
# SQLite file and in-memory providers before any authbridge module loads.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"authbridge-test-{os.getpid()}.sqlite3")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
)
os.environ["AUTH_PROVIDER_DRIVER"] = "fake"
os.environ.setdefault("RL_BACKEND", "database")
os.environ.setdefault("SMS_SENDER", "log")

import pytest  # noqa: E402

from authbridge.core.config import get_settings  # noqa: E402
from authbridge.domain.models import Base  # noqa: E402
from authbridge.persistence.db import engine  # noqa: E402
from authbridge.providers.identity.factory import ProviderContext, get_provider_context  # noqa: E402
from authbridge.providers.sms.senders import LoggingSmsSender, get_sms_sender  # noqa: E402
from authbridge.services.security.rate_limit import reset_rate_limiter_state  # noqa: E402
from authbridge.tests.utils.auth import fake_providers  # noqa: E402


def _reset_process_caches() -> None:
    get_settings.cache_clear()
    get_provider_context.cache_clear()
    get_sms_sender.cache_clear()
    reset_rate_limiter_state()


@pytest.fixture(autouse=True)
async def reset_database_between_tests() -> None:
    # Every test starts from empty tables and fresh cached settings/limiters.
    _reset_process_caches()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    _reset_process_caches()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture
def providers() -> ProviderContext:
    # Dual-provider context with Cognito as primary, both in memory.
    return fake_providers()


@pytest.fixture
def sms_sender() -> LoggingSmsSender:
    return LoggingSmsSender()
