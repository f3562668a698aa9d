from __future__ import annotations

import pytest

from crmrelay.core.errors import ChatDeliveryError
from crmrelay.services.resilience import RetryPolicy, backoff_delay_ms, retry_async
from crmrelay.services.telemetry import counters_snapshot


_FAST = RetryPolicy(timeout_ms=500, max_attempts=3, backoff_ms=1)


def test_backoff_doubles_per_attempt_and_caps() -> None:
    delays = [backoff_delay_ms(attempt=attempt, base_ms=100, jitter=False) for attempt in (1, 2, 3)]
    assert delays == [100, 200, 400]
    assert backoff_delay_ms(attempt=6, base_ms=100, cap_ms=1000, jitter=False) == 1000


def test_jittered_backoff_stays_within_half_band() -> None:
    for _ in range(20):
        assert 50 <= backoff_delay_ms(attempt=1, base_ms=100) <= 150


@pytest.mark.asyncio
async def test_transient_failures_are_retried() -> None:
    calls = {"count": 0}

    async def _flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise ChatDeliveryError("bad gateway", status_code=502)
        return "ok"

    assert await retry_async(_flaky, policy=_FAST, name="chat_send") == "ok"
    assert calls["count"] == 3
    assert counters_snapshot()["chat_send_retries_total"] == 2


@pytest.mark.asyncio
async def test_permanent_failures_raise_immediately() -> None:
    calls = {"count": 0}

    async def _rejected() -> str:
        calls["count"] += 1
        raise ChatDeliveryError("bad request", status_code=400)

    with pytest.raises(ChatDeliveryError):
        await retry_async(_rejected, policy=_FAST)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_attempts_are_bounded() -> None:
    calls = {"count": 0}

    async def _down() -> str:
        calls["count"] += 1
        raise ConnectionResetError("reset by peer")

    with pytest.raises(ConnectionResetError):
        await retry_async(_down, policy=_FAST)
    assert calls["count"] == _FAST.max_attempts
