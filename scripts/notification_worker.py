from __future__ import annotations

from arq import run_worker

from crmrelay.core.logging import configure_logging
from crmrelay.workers.notification_worker import WorkerSettings


def _main() -> None:
    # Boot the Tier 1 consumer; the batch sweep and self-healing loop ride along inside it.
    configure_logging()
    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    _main()
