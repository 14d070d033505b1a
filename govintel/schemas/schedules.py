from datetime import datetime

from pydantic import BaseModel


class ScheduleOut(BaseModel):
    id: str
    source: str
    display_name: str | None = None
    run_type: str
    cron_expression: str
    timezone: str
    enabled: bool
    priority: int
    timeout_minutes: int
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None


class SchedulerTickOut(BaseModel):
    count: int
    job_ids: list[str]
