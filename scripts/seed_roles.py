from __future__ import annotations

import asyncio

from authbridge.core.logging import configure_logging
from authbridge.persistence.db import SessionLocal
from authbridge.services.auth.rbac import seed_default_roles


async def seed() -> None:
    # Safe to rerun; only missing roles, permissions and grants are inserted.
    async with SessionLocal() as session:
        created = await seed_default_roles(session)
    print(
        f"created_roles={created['roles']} created_permissions={created['permissions']} "
        f"created_grants={created['grants']}"
    )


if __name__ == "__main__":
    configure_logging()
    asyncio.run(seed())
