from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class JobOut(BaseModel):
    id: str
    source: str
    run_type: str
    status: str
    triggered_by: str
    triggered_at: datetime
    available_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    worker_id: str | None = None
    priority: int
    attempt: int
    max_attempts: int
    timeout_seconds: int
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None


class JobEventOut(BaseModel):
    id: int
    job_id: str
    event_type: str
    worker_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class JobDetailOut(JobOut):
    events: list[JobEventOut] = Field(default_factory=list)


class JobTriggerRequest(BaseModel):
    source: str = Field(min_length=1)
    run_type: str | None = None
    priority: int | None = Field(default=None, ge=1, le=10)
    parameters: dict[str, Any] = Field(default_factory=dict)


class JobCancelRequest(BaseModel):
    actor: str | None = None
