from crmrelay.services.delivery.critical_log import CriticalFailureLog
from crmrelay.services.delivery.direct import DirectDeliveryPipeline, DirectDeliveryResult, RuleSendResult
from crmrelay.services.delivery.orchestrator import DeliveryOrchestrator, DeliveryOutcome, new_delivery_id
from crmrelay.services.delivery.queue import (
    PROCESS_EVENT_JOB,
    ArqDeliveryQueue,
    DeliveryQueue,
    JobHandle,
    QueueHints,
)

__all__ = [
    "ArqDeliveryQueue",
    "CriticalFailureLog",
    "DeliveryOrchestrator",
    "DeliveryOutcome",
    "DeliveryQueue",
    "DirectDeliveryPipeline",
    "DirectDeliveryResult",
    "JobHandle",
    "PROCESS_EVENT_JOB",
    "QueueHints",
    "RuleSendResult",
    "new_delivery_id",
]
