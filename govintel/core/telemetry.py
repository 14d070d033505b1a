from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_INSTANCE_ID, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from govintel.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
JOB_SPAN_FIELDS = ("id", "source", "run_type", "attempt", "priority", "triggered_by")

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    component: str = "worker"


def configure_logging(level: str = "INFO") -> None:
    _install_log_correlation()
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def set_job_span_attributes(span: trace.Span, job: dict[str, Any]) -> None:
    for field in JOB_SPAN_FIELDS:
        value = job.get(field)
        if value is not None:
            span.set_attribute(f"job.{field}", value)


def setup_worker_telemetry(settings: Settings, *, worker_id: str | None = None) -> TelemetryRuntime:
    runtime = _setup_provider(settings, component="worker", instance_id=worker_id)
    if runtime.enabled:
        # Connector and analyzer calls are the worker's only outbound HTTP.
        _HTTPX_INSTRUMENTOR.instrument(tracer_provider=runtime.provider)
    return runtime


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    _flush_and_shutdown(runtime)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = _setup_provider(settings, component="api")
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider, excluded_urls="healthz")
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    FastAPIInstrumentor.uninstrument_app(app)
    _flush_and_shutdown(runtime)


def _setup_provider(settings: Settings, *, component: str, instance_id: str | None = None) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None, component=component)

    if settings.otel_log_correlation:
        _install_log_correlation()

    attributes: dict[str, str] = {
        SERVICE_NAME: f"{settings.otel_service_name}-{component}",
        DEPLOYMENT_ENVIRONMENT: settings.environment,
    }
    if instance_id:
        attributes[SERVICE_INSTANCE_ID] = instance_id

    provider = TracerProvider(
        resource=Resource.create(attributes),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    endpoint = _resolve_endpoint(settings)
    if endpoint:
        headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; %s spans stay in-process", attributes[SERVICE_NAME]
        )
    trace.set_tracer_provider(provider)
    return TelemetryRuntime(enabled=True, provider=provider, component=component)


def _resolve_endpoint(settings: Settings) -> str | None:
    return (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or None
    )


def _flush_and_shutdown(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def _parse_headers(raw: str | None) -> dict[str, str]:
    """Parse `key=value,key=value` exporter headers, dropping malformed pairs."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
