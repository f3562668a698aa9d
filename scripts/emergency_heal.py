from __future__ import annotations

import asyncio
import json

from crmrelay.core.logging import configure_logging
from crmrelay.services.runtime import build_runtime, is_ops_failure, run_emergency_heal


async def _main() -> int:
    configure_logging()
    runtime = build_runtime(use_queue=False)
    await runtime.start()
    try:
        result = await run_emergency_heal(runtime)
    finally:
        await runtime.aclose()
    print(json.dumps(result, indent=2, default=str))
    return 1 if is_ops_failure(result) else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
