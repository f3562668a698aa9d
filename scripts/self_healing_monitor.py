from __future__ import annotations

import asyncio

from crmrelay.core.logging import configure_logging
from crmrelay.services.runtime import build_runtime


async def _main() -> None:
    # Run the watchdog as its own process for deployments without a queue worker.
    configure_logging()
    runtime = build_runtime(use_queue=False)
    await runtime.start()
    try:
        await runtime.monitor.run_forever()
    finally:
        await runtime.aclose()


if __name__ == "__main__":
    asyncio.run(_main())
