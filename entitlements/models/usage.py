from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

MetricType = Literal[
    "concurrent_terminals",
    "courses_created",
    "lab_sessions",
    "concurrent_users",
]

METRIC_TYPES: tuple[str, ...] = (
    "concurrent_terminals",
    "courses_created",
    "lab_sessions",
    "concurrent_users",
)

# Zeroed on period rollover; the other metrics are live gauges.
PERIOD_SCOPED_METRICS = frozenset({"courses_created", "lab_sessions"})

NO_SUBSCRIPTION_MESSAGE = "No active subscription - upgrade required"


@dataclass(frozen=True, slots=True)
class UsageMetric:
    user_id: str
    metric_type: str
    current_value: int = 0
    current_limit: int = 0  # -1 = unlimited
    period_start: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_reset: datetime = field(default_factory=lambda: datetime.now(UTC))

    def allows(self, increment: int) -> bool:
        return self.current_limit == -1 or (
            self.current_value + increment <= self.current_limit
        )


@dataclass(frozen=True, slots=True)
class UsageCheck:
    allowed: bool
    current: int
    limit: int
    remaining: int  # -1 when unlimited
    message: str = ""

    @staticmethod
    def from_metric(metric: UsageMetric, increment: int) -> UsageCheck:
        limit = metric.current_limit
        current = metric.current_value
        allowed = metric.allows(increment)
        remaining = -1 if limit == -1 else max(0, limit - current)
        message = "" if allowed else (
            f"Usage limit exceeded. Current: {current}, Limit: {limit}"
        )
        return UsageCheck(
            allowed=allowed,
            current=current,
            limit=limit,
            remaining=remaining,
            message=message,
        )
