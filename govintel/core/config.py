from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "govtech-intel-control-plane"
    environment: str = "dev"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    job_default_timeout_seconds: int = 1800
    job_default_priority: int = 5
    worker_id: str = "local-worker"
    wake_channel: str = "pipeline_worker"
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 30.0
    scheduler_tick_interval_seconds: float = 30.0
    lease_reaper_interval_seconds: float = 60.0
    lease_reaper_grace_seconds: int = 120
    lease_reaper_batch_size: int = 100
    connector_base_url: str = "http://localhost:8100"
    connector_api_key: str | None = None
    connector_timeout_seconds: float = 60.0
    analyzer_url: str | None = None
    analyzer_api_key: str | None = None
    analyzer_timeout_seconds: float = 45.0
    analyzer_rate_limit_source: str = "anthropic"
    llm_trigger_score: float = 50.0
    llm_max_adjustment: float = 20.0
    otel_enabled: bool = True
    otel_service_name: str = "govtech-intel"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="GTI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
