from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


Severity = Literal["info", "warning", "critical"]


@dataclass(frozen=True)
class HealthIssue:
    check: str
    severity: Severity
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"check": self.check, "severity": self.severity, "message": self.message, "details": self.details}


@dataclass
class HealthCheckReport:
    # Accumulates findings from every check; a single critical issue makes the run unhealthy.
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    issues: list[HealthIssue] = field(default_factory=list)
    auto_fixes: list[dict[str, Any]] = field(default_factory=list)
    manual_actions: list[dict[str, Any]] = field(default_factory=list)
    checks_run: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def healthy(self) -> bool:
        return not any(issue.severity == "critical" for issue in self.issues)

    def add_issue(self, check: str, severity: Severity, message: str, **details: Any) -> None:
        self.issues.append(HealthIssue(check=check, severity=severity, message=message, details=details))

    def add_fix(self, check: str, action: str, count: int, **details: Any) -> None:
        self.auto_fixes.append({"check": check, "action": action, "count": count, **details})

    def add_manual_action(self, check: str, action: str, **details: Any) -> None:
        self.manual_actions.append({"check": check, "action": action, **details})

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checked_at": self.checked_at.isoformat(),
            "duration_ms": self.duration_ms,
            "checks_run": list(self.checks_run),
            "issues": [issue.to_dict() for issue in self.issues],
            "auto_fixes": list(self.auto_fixes),
            "manual_actions": list(self.manual_actions),
        }
