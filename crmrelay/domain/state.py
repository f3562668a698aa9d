from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Mapping
from uuid import uuid4

from crmrelay.core.errors import IllegalQueueTransitionError, IllegalTierTransitionError


def new_delivery_id() -> str:
    return f"del_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class DeliveryTier(str, Enum):
    QUEUE = "queue"
    DIRECT = "direct"
    BATCH = "batch"
    MANUAL = "manual"


class DeliveryState(str, Enum):
    STARTED = "started"
    TIER1_QUEUE_OK = "tier1_queue_ok"
    TIER1_QUEUE_FAILED = "tier1_queue_failed"
    TIER2_DIRECT_OK = "tier2_direct_ok"
    TIER2_DIRECT_FAILED = "tier2_direct_failed"
    TIER3_BATCH_SCHEDULED = "tier3_batch_scheduled"
    TIER4_MANUAL = "tier4_manual"


# Forward edges only; tier 4 is added to every non-terminal state below.
_TIER_EDGES: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.STARTED: frozenset({DeliveryState.TIER1_QUEUE_OK, DeliveryState.TIER1_QUEUE_FAILED}),
    DeliveryState.TIER1_QUEUE_FAILED: frozenset(
        {DeliveryState.TIER2_DIRECT_OK, DeliveryState.TIER2_DIRECT_FAILED}
    ),
    DeliveryState.TIER2_DIRECT_FAILED: frozenset({DeliveryState.TIER3_BATCH_SCHEDULED}),
}

TERMINAL_DELIVERY_STATES = frozenset(
    {
        DeliveryState.TIER1_QUEUE_OK,
        DeliveryState.TIER2_DIRECT_OK,
        DeliveryState.TIER3_BATCH_SCHEDULED,
        DeliveryState.TIER4_MANUAL,
    }
)

DELIVERY_TRANSITIONS: Mapping[DeliveryState, frozenset[DeliveryState]] = {
    state: _TIER_EDGES.get(state, frozenset())
    | (frozenset() if state in TERMINAL_DELIVERY_STATES else frozenset({DeliveryState.TIER4_MANUAL}))
    for state in DeliveryState
}

# Tier that produced each state, used when writing delivery log rows.
STATE_TIER: Mapping[DeliveryState, DeliveryTier | None] = {
    DeliveryState.STARTED: None,
    DeliveryState.TIER1_QUEUE_OK: DeliveryTier.QUEUE,
    DeliveryState.TIER1_QUEUE_FAILED: DeliveryTier.QUEUE,
    DeliveryState.TIER2_DIRECT_OK: DeliveryTier.DIRECT,
    DeliveryState.TIER2_DIRECT_FAILED: DeliveryTier.DIRECT,
    DeliveryState.TIER3_BATCH_SCHEDULED: DeliveryTier.BATCH,
    DeliveryState.TIER4_MANUAL: DeliveryTier.MANUAL,
}


def can_advance(source: DeliveryState, target: DeliveryState) -> bool:
    return target in DELIVERY_TRANSITIONS[source]


@dataclass
class DeliveryStateMachine:
    # Track one delivery's path through the tiers; illegal edges raise instead of being recorded.
    delivery_id: str
    state: DeliveryState = DeliveryState.STARTED
    history: list[DeliveryState] = field(default_factory=lambda: [DeliveryState.STARTED])

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_DELIVERY_STATES

    @property
    def tier(self) -> DeliveryTier | None:
        return STATE_TIER[self.state]

    def advance(self, target: DeliveryState) -> DeliveryState:
        if not can_advance(self.state, target):
            raise IllegalTierTransitionError(
                f"delivery {self.delivery_id}: {self.state.value} -> {target.value} is not allowed"
            )
        self.state = target
        self.history.append(target)
        return target


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_RECOVERY = "manual_recovery"
    ERROR = "error"


# failed -> pending is the only backwards edge and callers must guard it with the retry cap.
QUEUE_STATUS_TRANSITIONS: Mapping[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING, QueueStatus.FAILED}),
    QueueStatus.MANUAL_RECOVERY: frozenset({QueueStatus.PROCESSING, QueueStatus.FAILED}),
    QueueStatus.PROCESSING: frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.ERROR}),
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.ERROR: frozenset(),
}

RETRY_EDGE = (QueueStatus.FAILED, QueueStatus.PENDING)


def allowed_sources(target: QueueStatus) -> frozenset[QueueStatus]:
    # Statuses a row may hold for an update to `target` to be legal.
    return frozenset(src for src, targets in QUEUE_STATUS_TRANSITIONS.items() if target in targets)


def check_queue_transition(source: QueueStatus | str, target: QueueStatus | str) -> None:
    source_status = QueueStatus(source)
    target_status = QueueStatus(target)
    if target_status not in QUEUE_STATUS_TRANSITIONS[source_status]:
        raise IllegalQueueTransitionError(f"{source_status.value} -> {target_status.value} is not allowed")
