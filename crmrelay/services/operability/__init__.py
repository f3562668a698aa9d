from crmrelay.services.operability.monitor import SelfHealingMonitor
from crmrelay.services.operability.report import HealthCheckReport, HealthIssue

__all__ = [
    "HealthCheckReport",
    "HealthIssue",
    "SelfHealingMonitor",
]
