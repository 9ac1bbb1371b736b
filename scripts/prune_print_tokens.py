from __future__ import annotations

import asyncio

from printvault.persistence.db import SessionLocal
from printvault.services.printing.tokens import gc_expired_tokens


async def prune() -> None:
    # Drop print tokens past the retention window; used tokens stay in the audit log.
    async with SessionLocal() as session:
        deleted = await gc_expired_tokens(session)
        print(f"pruned_print_tokens={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
