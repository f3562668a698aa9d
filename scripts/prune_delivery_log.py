from __future__ import annotations

import asyncio

from crmrelay.persistence.db import SessionLocal
from crmrelay.services.maintenance import prune_completed_queue, prune_delivery_log


async def prune() -> None:
    async with SessionLocal() as session:
        deleted_log = await prune_delivery_log(session)
        deleted_queue = await prune_completed_queue(session)
        await session.commit()
        print(f"pruned_delivery_log={deleted_log} pruned_completed_queue={deleted_queue}")


if __name__ == "__main__":
    asyncio.run(prune())
