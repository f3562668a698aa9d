from __future__ import annotations

import argparse
import asyncio
import json

from crmrelay.core.logging import configure_logging
from crmrelay.services.runtime import build_runtime, is_ops_failure, retry_failed


async def _main(limit: int) -> int:
    configure_logging()
    runtime = build_runtime(use_queue=False)
    await runtime.start()
    try:
        result = await retry_failed(limit=limit, runtime=runtime)
    finally:
        await runtime.aclose()
    print(json.dumps(result, indent=2, default=str))
    return 1 if is_ops_failure(result) else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay failed and manual-recovery deliveries.")
    parser.add_argument("--limit", type=int, default=10)
    args = parser.parse_args()
    raise SystemExit(asyncio.run(_main(args.limit)))
