from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from govintel.core.config import Settings, get_settings
from govintel.core.errors import FatalJobError, FetchError, JobCancelled, RateLimitDeferred
from govintel.core.telemetry import (
    configure_logging,
    set_job_span_attributes,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from govintel.jobs.context import JobContext
from govintel.jobs.executor import execute_job
from govintel.jobs.lease_reaper import lease_expired, reap_expired_leases
from govintel.jobs.scheduler import run_scheduler_tick
from govintel.services.analyzer import HttpQualitativeAnalyzer, QualitativeAnalyzer
from govintel.services.audit import PipelineRunRecord
from govintel.services.connectors import HttpSourceConnector, SourceConnector
from govintel.services.repository import get_repository
from govintel.services.runtime_config import build_runtime_config, load_runtime_config
from govintel.services.wake import JobWakeListener

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_job(
    job: dict[str, Any],
    *,
    repository: Any,
    settings: Settings,
    worker_id: str,
    connector: SourceConnector,
    analyzer: QualitativeAnalyzer | None = None,
) -> str:
    """Execute one leased job and write its outcome.

    Returns one of `completed`, `retry`, `failed`, `deferred`, `cancelled`
    or `lost` (the lease was taken away before the outcome could be written).
    """
    failure: str | None = None
    try:
        config = await load_runtime_config(repository, settings)
    except Exception as exc:
        logger.exception("runtime config unavailable for job id=%s", job.get("id"))
        # Failed through the retry policy with settings-only defaults recorded.
        config = build_runtime_config({}, settings)
        failure = f"runtime config unavailable: {type(exc).__name__}: {exc}"

    ctx = JobContext(
        job=job,
        worker_id=worker_id,
        repository=repository,
        config=config,
        connector=connector,
        analyzer=analyzer,
        analyzer_rate_limit_source=settings.analyzer_rate_limit_source,
    )
    timeout_seconds = float(job.get("timeout_seconds") or settings.job_default_timeout_seconds)

    outcome: str | None = None
    retryable = True
    if failure is None:
        try:
            await asyncio.wait_for(execute_job(ctx), timeout=timeout_seconds)
        except RateLimitDeferred as exc:
            deferred = await repository.defer_job(
                ctx.job_id,
                worker_id,
                retry_at=exc.retry_at,
                reason=str(exc),
                result=_result(ctx),
            )
            outcome = "deferred" if deferred else "lost"
            logger.info("deferred job id=%s until %s", ctx.job_id, exc.retry_at.isoformat())
        except JobCancelled as exc:
            outcome = "cancelled"
            logger.info("stopped job id=%s: %s", ctx.job_id, exc)
        except FatalJobError as exc:
            failure, retryable = str(exc), False
        except FetchError as exc:
            failure, retryable = str(exc), not exc.fatal
        except asyncio.TimeoutError:
            failure = f"job exceeded its timeout budget of {timeout_seconds:g}s"
        except Exception as exc:
            logger.exception("job execution failed for id=%s", ctx.job_id)
            failure = f"{type(exc).__name__}: {exc}"

    if outcome is None and failure is None:
        if lease_expired(job, grace_seconds=settings.lease_reaper_grace_seconds):
            logger.warning("job id=%s finished after its lease deadline", ctx.job_id)
        completed = await repository.complete_job(ctx.job_id, worker_id, _result(ctx))
        outcome = "completed" if completed else "lost"
    elif outcome is None:
        logger.warning("job id=%s failed (retryable=%s): %s", ctx.job_id, retryable, failure)
        transition = await repository.fail_job(
            ctx.job_id,
            worker_id,
            error_message=failure or "unknown error",
            result=_result(ctx),
            retryable=retryable,
        )
        if transition is None:
            outcome = "lost"
        else:
            outcome = "retry" if transition.status == "pending" else "failed"

    run_status = _run_status(outcome)
    await repository.record_pipeline_run(
        PipelineRunRecord(
            job_id=ctx.job_id,
            source=ctx.source,
            run_type=ctx.run_type,
            status=run_status,
            started_at=ctx.started_at,
            completed_at=datetime.now(timezone.utc),
            stats=ctx.stats,
            metadata={"attempt": job.get("attempt"), "worker_id": worker_id, "config_version": config.version},
        )
    )
    await repository.update_source_health(
        ctx.source,
        run_status=run_status,
        error_message=failure,
        fatal=failure is not None and not retryable,
    )
    return outcome


def _result(ctx: JobContext) -> dict[str, Any]:
    result = ctx.stats.as_result()
    result["config_version"] = ctx.config.version
    return result


def _run_status(outcome: str) -> str:
    if outcome in {"retry", "failed"}:
        return "failed"
    if outcome == "lost":
        return "cancelled"
    return outcome


def resolve_worker_id(settings: Settings) -> str:
    return f"{settings.worker_id}:{os.getpid()}"


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    worker_id = resolve_worker_id(settings)
    telemetry_runtime = setup_worker_telemetry(settings, worker_id=worker_id)
    repository = get_repository()
    connector = HttpSourceConnector(
        base_url=settings.connector_base_url,
        api_key=settings.connector_api_key,
        timeout_seconds=settings.connector_timeout_seconds,
    )
    analyzer = (
        HttpQualitativeAnalyzer(
            url=settings.analyzer_url,
            api_key=settings.analyzer_api_key,
            timeout_seconds=settings.analyzer_timeout_seconds,
        )
        if settings.analyzer_url
        else None
    )
    listener = JobWakeListener(settings.database_url, settings.wake_channel)

    backoff = settings.poll_interval_seconds
    last_tick_at = 0.0
    last_reap_at = 0.0
    logger.info("worker started id=%s", worker_id)

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    await listener.ensure_started()
                    now = time.monotonic()
                    if now - last_tick_at >= settings.scheduler_tick_interval_seconds:
                        await run_scheduler_tick(repository, settings)
                        last_tick_at = now

                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        await reap_expired_leases(
                            repository,
                            grace_seconds=settings.lease_reaper_grace_seconds,
                            batch_size=settings.lease_reaper_batch_size,
                        )
                        last_reap_at = now

                    job = await repository.dequeue_job(worker_id)
                    if job is None:
                        await listener.wait(settings.poll_interval_seconds)
                        continue

                    with tracer.start_as_current_span("worker.process_job") as job_span:
                        set_job_span_attributes(job_span, job)
                        outcome = await process_job(
                            job,
                            repository=repository,
                            settings=settings,
                            worker_id=worker_id,
                            connector=connector,
                            analyzer=analyzer,
                        )
                        job_span.set_attribute("job.outcome", outcome)
                        logger.info("job id=%s source=%s outcome=%s", job["id"], job["source"], outcome)

                backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await listener.stop()
        await repository.close()
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
