from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger


class ScheduleConfigError(ValueError):
    """Raised when a schedule's cron expression or timezone cannot be parsed."""


@dataclass(slots=True)
class ScheduleRecord:
    id: str
    source: str
    display_name: str
    run_type: str
    cron_expression: str
    timezone: str
    enabled: bool
    priority: int
    timeout_minutes: int
    last_run_at: datetime | None
    next_run_at: datetime | None

    @property
    def timeout_seconds(self) -> int:
        return max(60, self.timeout_minutes * 60)


def build_trigger(cron_expression: str, timezone_name: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(cron_expression, timezone=timezone_name or "UTC")
    except (KeyError, ValueError) as exc:
        raise ScheduleConfigError(
            f"invalid schedule cron={cron_expression!r} timezone={timezone_name!r}: {exc}"
        ) from exc


def next_fire_time(cron_expression: str, timezone_name: str, *, after: datetime) -> datetime:
    trigger = build_trigger(cron_expression, timezone_name)
    # Cron fire times are inclusive of `now`; step past the current second.
    fire_at = trigger.get_next_fire_time(None, after.astimezone(timezone.utc) + timedelta(seconds=1))
    if fire_at is None:
        raise ScheduleConfigError(f"schedule cron={cron_expression!r} never fires again")
    return fire_at.astimezone(timezone.utc)
