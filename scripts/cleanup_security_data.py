from __future__ import annotations

import argparse
import asyncio

from authbridge.core.logging import configure_logging
from authbridge.persistence.db import SessionLocal
from authbridge.services.auth.mfa import cleanup_sms_codes
from authbridge.services.auth.sessions import cleanup_expired_sessions
from authbridge.services.security.events import cleanup_security_events


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire stale sessions and prune security data.")
    parser.add_argument("--session-retention-days", type=int, default=None)
    parser.add_argument("--event-retention-days", type=int, default=None)
    parser.add_argument("--sms-code-hours", type=int, default=24)
    return parser.parse_args()


async def cleanup(args: argparse.Namespace) -> None:
    async with SessionLocal() as session:
        sessions = await cleanup_expired_sessions(session, retention_days=args.session_retention_days)
        sms_codes = await cleanup_sms_codes(session, older_than_hours=args.sms_code_hours)
        events = await cleanup_security_events(session, retention_days=args.event_retention_days)
    print(
        f"expired_sessions={sessions['expired']} deleted_sessions={sessions['deleted']} "
        f"deleted_sms_codes={sms_codes} deleted_security_events={events}"
    )


if __name__ == "__main__":
    configure_logging()
    asyncio.run(cleanup(_parse_args()))
