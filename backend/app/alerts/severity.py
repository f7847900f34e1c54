from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

from backend.app import config


Severity = Literal["warning", "critical"]


@dataclass(frozen=True)
class AlertSummary:
    count: int
    total_cents: int
    severity: Severity
    by_type: dict[str, int] = field(default_factory=dict)


def severity_for_total(total_cents: int, *, critical_above_cents: Optional[int] = None) -> Severity:
    threshold = config.unbilled_critical_cents() if critical_above_cents is None else critical_above_cents
    return "critical" if total_cents > threshold else "warning"


def summarize(alerts: Iterable, *, critical_above_cents: Optional[int] = None) -> AlertSummary:
    """Aggregate open alerts. Computed on every read; severity is never persisted."""
    count = 0
    total = 0
    by_type: dict[str, int] = {}
    for alert in alerts:
        if alert.status != "open":
            continue
        amount = max(int(alert.estimated_amount_cents or 0), 0)
        count += 1
        total += amount
        by_type[alert.type] = by_type.get(alert.type, 0) + 1
    return AlertSummary(
        count=count,
        total_cents=total,
        severity=severity_for_total(total, critical_above_cents=critical_above_cents),
        by_type=by_type,
    )
