from __future__ import annotations

import argparse
import asyncio
import json

from crmrelay.core.logging import configure_logging
from crmrelay.services.runtime import build_runtime, get_delivery_stats, is_ops_failure


async def _main(hours: int) -> int:
    configure_logging()
    runtime = build_runtime(use_queue=False)
    try:
        stats = await get_delivery_stats(hours=hours, runtime=runtime)
    finally:
        await runtime.aclose()
    print(json.dumps(stats, indent=2, default=str))
    return 1 if is_ops_failure(stats) else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Summarize delivery outcomes per tier.")
    parser.add_argument("--hours", type=int, default=24)
    args = parser.parse_args()
    raise SystemExit(asyncio.run(_main(args.hours)))
