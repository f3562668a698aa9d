from __future__ import annotations

import asyncio

import pytest

from crmrelay.services.notifications.dedup import DedupKey, Deduplicator


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


KEY = DedupKey(tenant_id="t1", rule_id="r1", object_id="42", event_type="deal.added")


def test_claim_suppresses_inside_window_and_expires_after() -> None:
    clock = _Clock()
    dedup = Deduplicator(window_s=300, time_source=clock)
    assert dedup.claim(KEY)
    clock.now = 299.0
    assert not dedup.claim(KEY)
    assert dedup.is_duplicate(KEY)
    clock.now = 300.0
    assert not dedup.is_duplicate(KEY)
    assert dedup.claim(KEY)


def test_keys_differ_by_every_component() -> None:
    dedup = Deduplicator(window_s=300, time_source=_Clock())
    assert dedup.claim(KEY)
    assert dedup.claim(DedupKey("t1", "r1", "42", "deal.updated"))
    assert dedup.claim(DedupKey("t1", "r2", "42", "deal.added"))
    assert dedup.claim(DedupKey("t2", "r1", "42", "deal.added"))
    assert dedup.claim(DedupKey("t1", "r1", "43", "deal.added"))
    assert len(dedup) == 5
    assert KEY.as_string() == "t1:r1:42:deal.added"


def test_release_allows_immediate_retry() -> None:
    dedup = Deduplicator(window_s=300, time_source=_Clock())
    assert dedup.claim(KEY)
    dedup.release(KEY)
    assert dedup.claim(KEY)


def test_evict_expired_drops_only_stale_entries() -> None:
    clock = _Clock()
    dedup = Deduplicator(window_s=10, time_source=clock)
    dedup.claim(KEY)
    clock.now = 5.0
    other = DedupKey("t1", "r1", "99", "deal.added")
    dedup.claim(other)
    clock.now = 12.0
    assert dedup.evict_expired() == 1
    assert len(dedup) == 1
    assert dedup.is_duplicate(other)


@pytest.mark.asyncio
async def test_eviction_task_starts_and_stops() -> None:
    clock = _Clock()
    dedup = Deduplicator(window_s=1, eviction_interval_s=0.01, time_source=clock)
    dedup.claim(KEY)
    clock.now = 5.0
    dedup.start()
    assert dedup.running
    for _ in range(50):
        if len(dedup) == 0:
            break
        await asyncio.sleep(0.01)
    assert len(dedup) == 0
    await dedup.stop()
    assert not dedup.running
