from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Awaitable, Callable, TypeVar

from crmrelay.core.config import Settings, get_settings
from crmrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def chat_send_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.chat_send_timeout_ms,
        max_attempts=settings.chat_send_max_attempts,
        backoff_ms=settings.chat_send_backoff_ms,
    )


def backoff_delay_ms(*, attempt: int, base_ms: int, cap_ms: int | None = None, jitter: bool = True) -> int:
    # Exponential backoff from the first retry, optionally capped and jittered.
    delay = base_ms * (2 ** max(attempt - 1, 0))
    if cap_ms is not None:
        delay = min(delay, cap_ms)
    if jitter:
        delay = int(delay * random.uniform(0.5, 1.5))
    return max(int(delay), 0)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    name: str = "external",
) -> T:
    # Retry helper with jittered backoff for transient failures only; every attempt is time-bounded.
    policy = policy or chat_send_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter(f"{name}_retries_total")
            sleep_ms = backoff_delay_ms(attempt=attempt, base_ms=policy.backoff_ms)
            logger.info("retrying_external_call name=%s attempt=%s sleep_ms=%s", name, attempt, sleep_ms)
            await asyncio.sleep(sleep_ms / 1000.0)
            attempt += 1
