from datetime import datetime

from pydantic import BaseModel, Field


class SourceHealthOut(BaseModel):
    source: str
    status: str
    consecutive_failures: int
    needs_attention: bool
    success_rate_30d: float | None = None
    avg_duration_seconds: float | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error_message: str | None = None


class RateLimitUsageOut(BaseModel):
    daily_used: int
    daily_limit: int | None = None
    hourly_used: int
    hourly_limit: int | None = None


class ApiKeyStatusOut(BaseModel):
    expiry_status: str
    is_valid: bool


class SystemStatusOut(BaseModel):
    pipeline_jobs: dict[str, int]
    tenants: dict[str, int]
    source_health: dict[str, SourceHealthOut] = Field(default_factory=dict)
    rate_limits: dict[str, RateLimitUsageOut] = Field(default_factory=dict)
    api_keys: dict[str, ApiKeyStatusOut] = Field(default_factory=dict)
    checked_at: datetime
