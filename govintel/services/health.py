from __future__ import annotations

from datetime import date
from typing import Literal

HealthStatus = Literal["unknown", "healthy", "degraded", "failing", "attention"]
ExpiryStatus = Literal["no_expiry", "expired", "expiring_soon", "ok"]

FAILING_AFTER_CONSECUTIVE_FAILURES = 3


def next_consecutive_failures(previous: int, *, run_status: str) -> int:
    if run_status == "completed":
        return 0
    if run_status == "failed":
        return previous + 1
    return previous


def derive_health_status(*, consecutive_failures: int, needs_attention: bool) -> HealthStatus:
    if needs_attention:
        return "attention"
    if consecutive_failures <= 0:
        return "healthy"
    if consecutive_failures < FAILING_AFTER_CONSECUTIVE_FAILURES:
        return "degraded"
    return "failing"


def api_key_expiry_status(*, expires_date: date | None, days_warning: int, today: date) -> ExpiryStatus:
    if expires_date is None:
        return "no_expiry"
    days_left = (expires_date - today).days
    if days_left < 0:
        return "expired"
    if days_left < days_warning:
        return "expiring_soon"
    return "ok"
