from datetime import datetime, timezone

import pytest

from govintel.services.schedules import ScheduleConfigError, ScheduleRecord, next_fire_time

NOW = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


def test_next_fire_time_honours_schedule_timezone() -> None:
    fire_at = next_fire_time("0 6 * * *", "America/New_York", after=NOW)
    assert fire_at == datetime(2026, 3, 3, 11, 0, tzinfo=timezone.utc)


def test_next_fire_time_is_strictly_after_now() -> None:
    assert next_fire_time("*/15 * * * *", "UTC", after=NOW) == datetime(2026, 3, 2, 15, 45, tzinfo=timezone.utc)
    assert next_fire_time("30 15 * * *", "UTC", after=NOW) == datetime(2026, 3, 3, 15, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(("cron", "tz"), [("not a cron", "UTC"), ("0 6 * * *", "Mars/Olympus_Mons")])
def test_invalid_schedule_raises_config_error(cron: str, tz: str) -> None:
    with pytest.raises(ScheduleConfigError):
        next_fire_time(cron, tz, after=NOW)


def test_schedule_timeout_has_a_floor() -> None:
    schedule = ScheduleRecord(
        id="s-1",
        source="sam_gov",
        display_name="SAM.gov",
        run_type="incremental",
        cron_expression="0 */4 * * *",
        timezone="UTC",
        enabled=True,
        priority=2,
        timeout_minutes=0,
        last_run_at=None,
        next_run_at=None,
    )
    assert schedule.timeout_seconds == 60
