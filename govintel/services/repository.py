from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any
from urllib.parse import unquote, urlparse

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from govintel.core.config import get_settings
from govintel.services.audit import PipelineRunRecord
from govintel.services.health import api_key_expiry_status, derive_health_status, next_consecutive_failures
from govintel.services.opportunities import FieldChange, Opportunity, diff_watched_fields
from govintel.services.rate_limits import QuotaDecision, RateLimitState, check_and_increment, summarize_usage
from govintel.services.schedules import ScheduleConfigError, ScheduleRecord, next_fire_time
from govintel.services.scoring import ScoreBreakdown, TenantProfile
from govintel.services.wake import build_wake_payload

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class FailureTransition:
    status: str
    attempt: int
    retry_delay_seconds: int | None


@dataclass(slots=True)
class UpsertOutcome:
    opportunity: Opportunity
    created: bool
    changed: bool
    amendments: list[FieldChange]


JOB_STATUSES = {"pending", "running", "completed", "failed", "cancelled"}
JOB_TRIGGERS = {"scheduler", "manual"}
ELIGIBLE_TENANT_STATUSES = ("active", "trial")

_JOB_COLUMNS = """
  id::text as id,
  source,
  run_type,
  status,
  triggered_by,
  triggered_at,
  available_at,
  started_at,
  completed_at,
  worker_id,
  priority,
  attempt,
  max_attempts,
  timeout_seconds,
  parameters,
  result,
  error_message
"""

_OPPORTUNITY_COLUMNS = """
  id::text as id,
  source,
  source_id,
  title,
  description,
  agency,
  agency_code,
  naics_codes,
  set_aside_type,
  set_aside_code,
  opportunity_type,
  posted_date,
  close_date,
  estimated_value_min,
  estimated_value_max,
  solicitation_number,
  contract_number,
  source_url,
  document_urls,
  content_hash,
  status,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
        job_default_timeout_seconds: int = 1800,
        job_default_priority: int = 5,
        wake_channel: str = "pipeline_worker",
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self.job_default_timeout_seconds = max(1, job_default_timeout_seconds)
        self.job_default_priority = job_default_priority
        self.wake_channel = wake_channel
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # -- queue -------------------------------------------------------------

    async def enqueue_job(
        self,
        *,
        source: str,
        run_type: str | None = None,
        priority: int | None = None,
        triggered_by: str = "manual",
        parameters: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        normalized_source = self._coerce_text(source)
        if not normalized_source:
            raise RepositoryValidationError("source must be a non-empty string")
        if triggered_by not in JOB_TRIGGERS:
            raise RepositoryValidationError("triggered_by must be one of: scheduler, manual")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                schedule = await conn.fetchrow(
                    """
                    select run_type, priority, timeout_minutes
                    from pipeline_schedules
                    where source = $1
                    """,
                    normalized_source,
                )
                resolved_run_type = self._coerce_text(run_type) or (schedule["run_type"] if schedule else "full")
                resolved_priority = priority if priority is not None else (
                    int(schedule["priority"]) if schedule else self.job_default_priority
                )
                timeout_seconds = (
                    max(60, int(schedule["timeout_minutes"]) * 60) if schedule else self.job_default_timeout_seconds
                )
                return await self._insert_pending_job(
                    conn,
                    source=normalized_source,
                    run_type=resolved_run_type,
                    priority=resolved_priority,
                    triggered_by=triggered_by,
                    timeout_seconds=timeout_seconds,
                    max_attempts=max_attempts or self.job_max_attempts,
                    parameters=parameters or {},
                )

    async def dequeue_job(self, worker_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_job as (
                      select id
                      from pipeline_jobs
                      where status = 'pending'
                        and available_at <= now()
                      order by priority asc, triggered_at asc
                      limit 1
                      for update skip locked
                    )
                    update pipeline_jobs j
                    set
                      status = 'running',
                      worker_id = $1,
                      started_at = now(),
                      completed_at = null
                    from next_job
                    where j.id = next_job.id
                    returning {_JOB_COLUMNS.replace("  id::text", "  j.id::text")}
                    """,
                    worker_id,
                )
                if row is None:
                    return None
                await self._record_job_event(
                    conn,
                    job_id=row["id"],
                    event_type="leased",
                    worker_id=worker_id,
                    payload={"attempt": int(row["attempt"]), "max_attempts": int(row["max_attempts"])},
                )
                return self._job_row_to_dict(row)

    async def complete_job(self, job_id: str, worker_id: str, result: dict[str, Any]) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    update pipeline_jobs
                    set
                      status = 'completed',
                      completed_at = now(),
                      result = $3::jsonb,
                      error_message = null
                    where id = $1::uuid
                      and status = 'running'
                      and worker_id = $2
                    returning id::text as id
                    """,
                    job_id,
                    worker_id,
                    json.dumps(result, default=str),
                )
                if row is None:
                    return False
                await self._record_job_event(conn, job_id=job_id, event_type="completed", worker_id=worker_id)
                return True

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        *,
        error_message: str,
        result: dict[str, Any] | None = None,
        retryable: bool = True,
    ) -> FailureTransition | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    select attempt, max_attempts
                    from pipeline_jobs
                    where id = $1::uuid
                      and status = 'running'
                      and worker_id = $2
                    for update
                    """,
                    job_id,
                    worker_id,
                )
                if current is None:
                    return None
                transition = self._resolve_failure_transition(
                    attempt=int(current["attempt"]),
                    max_attempts=int(current["max_attempts"]),
                    retryable=retryable,
                )
                await self._apply_failure_transition(
                    conn,
                    job_id=job_id,
                    worker_id=worker_id,
                    transition=transition,
                    error_message=error_message,
                    result=result,
                    previous_attempt=int(current["attempt"]),
                )
                return transition

    async def defer_job(
        self,
        job_id: str,
        worker_id: str,
        *,
        retry_at: datetime,
        reason: str,
        result: dict[str, Any] | None = None,
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    update pipeline_jobs
                    set
                      status = 'pending',
                      worker_id = null,
                      started_at = null,
                      available_at = $3,
                      result = $4::jsonb,
                      error_message = $5
                    where id = $1::uuid
                      and status = 'running'
                      and worker_id = $2
                    returning id::text as id
                    """,
                    job_id,
                    worker_id,
                    retry_at,
                    json.dumps(result, default=str) if result is not None else None,
                    reason,
                )
                if row is None:
                    return False
                await self._record_job_event(
                    conn,
                    job_id=job_id,
                    event_type="deferred",
                    worker_id=worker_id,
                    payload={"retry_at": retry_at.isoformat(), "reason": reason},
                )
                return True

    async def cancel_job(self, job_id: str, *, actor: str | None = None) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update pipeline_jobs
                        set
                          status = 'cancelled',
                          completed_at = now()
                        where id = $1::uuid
                          and status in ('pending', 'running')
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                    )
                    if row is None:
                        exists = await conn.fetchval("select 1 from pipeline_jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError("job is not cancellable")
                    await self._record_job_event(
                        conn,
                        job_id=row["id"],
                        event_type="cancelled",
                        worker_id=row["worker_id"],
                        payload={"actor": actor},
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def is_lease_held(self, job_id: str, worker_id: str) -> bool:
        pool = await self._get_pool()
        held = await pool.fetchval(
            """
            select 1
            from pipeline_jobs
            where id = $1::uuid
              and status = 'running'
              and worker_id = $2
            """,
            job_id,
            worker_id,
        )
        return bool(held)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from pipeline_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        source: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError(f"status must be one of: {', '.join(sorted(JOB_STATUSES))}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from pipeline_jobs
            where ($1::text is null or status = $1)
              and ($2::text is null or source = $2)
            order by triggered_at desc
            limit $3
            offset $4
            """,
            status,
            self._coerce_text(source),
            max(1, min(limit, 500)),
            max(0, offset),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_job_events(self, job_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, job_id::text as job_id, event_type, worker_id, payload, created_at
            from job_events
            where job_id = $1::uuid
            order by id asc
            """,
            job_id,
        )
        return [
            {
                "id": int(row["id"]),
                "job_id": row["job_id"],
                "event_type": row["event_type"],
                "worker_id": row["worker_id"],
                "payload": self._coerce_json_dict(row["payload"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def fail_expired_running_jobs(self, *, grace_seconds: int, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    select id::text as id, worker_id, attempt, max_attempts
                    from pipeline_jobs
                    where status = 'running'
                      and started_at is not null
                      and started_at + ((timeout_seconds + $1::int) * interval '1 second') <= now()
                    order by started_at asc
                    limit $2
                    for update skip locked
                    """,
                    grace_seconds,
                    bounded_limit,
                )
                for row in rows:
                    transition = self._resolve_failure_transition(
                        attempt=int(row["attempt"]),
                        max_attempts=int(row["max_attempts"]),
                        retryable=True,
                    )
                    await self._record_job_event(
                        conn,
                        job_id=row["id"],
                        event_type="lease_expired",
                        worker_id=row["worker_id"],
                        payload={"grace_seconds": grace_seconds},
                    )
                    await self._apply_failure_transition(
                        conn,
                        job_id=row["id"],
                        worker_id=row["worker_id"],
                        transition=transition,
                        error_message="lease expired: worker exceeded the job timeout budget",
                        result=None,
                        previous_attempt=int(row["attempt"]),
                    )
                return len(rows)

    async def _insert_pending_job(
        self,
        conn: asyncpg.Connection,
        *,
        source: str,
        run_type: str,
        priority: int,
        triggered_by: str,
        timeout_seconds: int,
        max_attempts: int,
        parameters: dict[str, Any],
    ) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"""
            insert into pipeline_jobs (
              source,
              run_type,
              status,
              triggered_by,
              priority,
              attempt,
              max_attempts,
              timeout_seconds,
              parameters
            )
            values ($1, $2, 'pending', $3, $4, 1, $5, $6, $7::jsonb)
            returning {_JOB_COLUMNS}
            """,
            source,
            run_type,
            triggered_by,
            priority,
            max(1, max_attempts),
            timeout_seconds,
            json.dumps(parameters, default=str),
        )
        await self._record_job_event(
            conn,
            job_id=row["id"],
            event_type="enqueued",
            worker_id=None,
            payload={"triggered_by": triggered_by, "priority": priority},
        )
        # Delivered to listeners when the surrounding transaction commits.
        await conn.execute(
            "select pg_notify($1, $2)",
            self.wake_channel,
            build_wake_payload(job_id=row["id"], source=source, run_type=run_type, priority=priority),
        )
        return self._job_row_to_dict(row)

    async def _apply_failure_transition(
        self,
        conn: asyncpg.Connection,
        *,
        job_id: str,
        worker_id: str | None,
        transition: FailureTransition,
        error_message: str,
        result: dict[str, Any] | None,
        previous_attempt: int,
    ) -> None:
        await conn.execute(
            """
            update pipeline_jobs
            set
              status = $2,
              attempt = $3,
              worker_id = null,
              started_at = case when $2 = 'pending' then null else started_at end,
              completed_at = case when $2 = 'pending' then null else now() end,
              available_at = case
                when $2 = 'pending' then now() + (coalesce($4::int, 0) * interval '1 second')
                else available_at
              end,
              triggered_by = case when $2 = 'pending' then 'retry' else triggered_by end,
              error_message = $5,
              result = $6::jsonb
            where id = $1::uuid
            """,
            job_id,
            transition.status,
            transition.attempt,
            transition.retry_delay_seconds,
            error_message,
            json.dumps(result, default=str) if result is not None else None,
        )
        await self._record_job_event(
            conn,
            job_id=job_id,
            event_type="failed",
            worker_id=worker_id,
            payload={"attempt": previous_attempt, "error": error_message, "terminal": transition.status == "failed"},
        )
        if transition.status == "pending":
            await self._record_job_event(
                conn,
                job_id=job_id,
                event_type="retry_scheduled",
                worker_id=worker_id,
                payload={"attempt": transition.attempt, "retry_delay_seconds": transition.retry_delay_seconds},
            )

    async def _record_job_event(
        self,
        conn: asyncpg.Connection,
        *,
        job_id: str,
        event_type: str,
        worker_id: str | None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        await conn.execute(
            """
            insert into job_events (job_id, event_type, worker_id, payload)
            values ($1::uuid, $2, $3, $4::jsonb)
            """,
            job_id,
            event_type,
            worker_id,
            json.dumps(payload or {}, default=str),
        )

    # -- scheduler ---------------------------------------------------------

    async def list_schedules(self) -> list[ScheduleRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id, source, display_name, run_type, cron_expression, timezone,
              enabled, priority, timeout_minutes, last_run_at, next_run_at
            from pipeline_schedules
            order by priority asc, source asc
            """
        )
        return [self._schedule_row_to_record(row) for row in rows]

    async def enqueue_due_schedules(
        self,
        *,
        now: datetime | None = None,
        max_attempts: int | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        enqueued: list[dict[str, Any]] = []

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    select
                      id::text as id, source, display_name, run_type, cron_expression, timezone,
                      enabled, priority, timeout_minutes, last_run_at, next_run_at
                    from pipeline_schedules
                    where enabled = true
                      and (next_run_at is null or next_run_at <= $1)
                    order by next_run_at asc nulls first, priority asc
                    limit $2
                    for update skip locked
                    """,
                    current,
                    max(1, min(limit, 1000)),
                )
                for row in rows:
                    schedule = self._schedule_row_to_record(row)
                    try:
                        following = next_fire_time(schedule.cron_expression, schedule.timezone, after=current)
                    except ScheduleConfigError as exc:
                        logger.error("skipping schedule source=%s: %s", schedule.source, exc)
                        continue

                    if schedule.next_run_at is None:
                        await conn.execute(
                            "update pipeline_schedules set next_run_at = $2, updated_at = now() where id = $1::uuid",
                            schedule.id,
                            following,
                        )
                        continue

                    job = await self._insert_pending_job(
                        conn,
                        source=schedule.source,
                        run_type=schedule.run_type,
                        priority=schedule.priority,
                        triggered_by="scheduler",
                        timeout_seconds=schedule.timeout_seconds,
                        max_attempts=max_attempts or self.job_max_attempts,
                        parameters={"schedule_id": schedule.id},
                    )
                    await conn.execute(
                        """
                        update pipeline_schedules
                        set last_run_at = $2, next_run_at = $3, updated_at = now()
                        where id = $1::uuid
                        """,
                        schedule.id,
                        current,
                        following,
                    )
                    enqueued.append(job)
        return enqueued

    # -- rate limits -------------------------------------------------------

    async def acquire_quota(self, source: str, *, now: datetime | None = None) -> QuotaDecision:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    select
                      source, requests_today, requests_this_hour, daily_limit, hourly_limit,
                      daily_window_start, hourly_window_start, last_request_at, last_reset_at
                    from rate_limit_state
                    where source = $1
                    for update
                    """,
                    source,
                )
                if row is None:
                    return QuotaDecision(source=source, can_proceed=True, daily_remaining=None, hourly_remaining=None)

                updated, decision = check_and_increment(self._rate_limit_row_to_state(row), now=current)
                await conn.execute(
                    """
                    update rate_limit_state
                    set
                      requests_today = $2,
                      requests_this_hour = $3,
                      daily_window_start = $4,
                      hourly_window_start = $5,
                      last_request_at = $6,
                      last_reset_at = $7
                    where source = $1
                    """,
                    source,
                    updated.requests_today,
                    updated.requests_this_hour,
                    updated.daily_window_start,
                    updated.hourly_window_start,
                    updated.last_request_at,
                    updated.last_reset_at,
                )
                return decision

    async def list_rate_limits(self) -> list[RateLimitState]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              source, requests_today, requests_this_hour, daily_limit, hourly_limit,
              daily_window_start, hourly_window_start, last_request_at, last_reset_at
            from rate_limit_state
            order by source asc
            """
        )
        return [self._rate_limit_row_to_state(row) for row in rows]

    # -- opportunities -----------------------------------------------------

    async def upsert_opportunity(self, opportunity: Opportunity) -> UpsertOutcome:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await self._fetch_opportunity_for_update(conn, opportunity.source, opportunity.source_id)
                if existing is None:
                    row = await conn.fetchrow(
                        """
                        insert into opportunities (
                          source, source_id, title, description, agency, agency_code, naics_codes,
                          set_aside_type, set_aside_code, opportunity_type, posted_date, close_date,
                          estimated_value_min, estimated_value_max, solicitation_number, contract_number,
                          source_url, document_urls, content_hash, status, raw_data
                        )
                        values (
                          $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16,
                          $17, $18::jsonb, $19, $20, $21::jsonb
                        )
                        on conflict (source, source_id) do nothing
                        returning id::text as id, created_at, updated_at
                        """,
                        *self._opportunity_params(opportunity),
                    )
                    if row is not None:
                        opportunity.id = row["id"]
                        opportunity.created_at = row["created_at"]
                        opportunity.updated_at = row["updated_at"]
                        return UpsertOutcome(opportunity=opportunity, created=True, changed=False, amendments=[])
                    # Lost an insert race; the winner's row is now visible.
                    existing = await self._fetch_opportunity_for_update(
                        conn, opportunity.source, opportunity.source_id
                    )
                    if existing is None:
                        raise RepositoryConflictError("opportunity vanished during upsert")

                previous = self._opportunity_row_to_model(existing)
                if previous.content_hash == opportunity.content_hash:
                    return UpsertOutcome(opportunity=previous, created=False, changed=False, amendments=[])

                changes = diff_watched_fields(previous, opportunity)
                row = await conn.fetchrow(
                    """
                    update opportunities
                    set
                      title = $3, description = $4, agency = $5, agency_code = $6, naics_codes = $7,
                      set_aside_type = $8, set_aside_code = $9, opportunity_type = $10,
                      posted_date = $11, close_date = $12, estimated_value_min = $13,
                      estimated_value_max = $14, solicitation_number = $15, contract_number = $16,
                      source_url = $17, document_urls = $18::jsonb, content_hash = $19, status = $20,
                      raw_data = $21::jsonb, updated_at = now()
                    where source = $1 and source_id = $2
                    returning id::text as id, created_at, updated_at
                    """,
                    *self._opportunity_params(opportunity),
                )
                for change in changes:
                    await conn.execute(
                        """
                        insert into amendments (opportunity_id, change_type, old_value, new_value)
                        values ($1::uuid, $2, $3, $4)
                        """,
                        row["id"],
                        change.change_type,
                        change.old_value,
                        change.new_value,
                    )
                opportunity.id = row["id"]
                opportunity.created_at = row["created_at"]
                opportunity.updated_at = row["updated_at"]
                return UpsertOutcome(opportunity=opportunity, created=False, changed=True, amendments=changes)

    async def list_active_opportunities(self, *, limit: int = 500, offset: int = 0) -> list[Opportunity]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_OPPORTUNITY_COLUMNS}
            from opportunities
            where status = 'active'
              and (close_date is null or close_date >= now())
            order by id asc
            limit $1
            offset $2
            """,
            max(1, min(limit, 5000)),
            max(0, offset),
        )
        return [self._opportunity_row_to_model(row) for row in rows]

    async def list_amendments(self, opportunity_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, opportunity_id::text as opportunity_id, change_type,
                   old_value, new_value, detected_at, notified, notified_at
            from amendments
            where opportunity_id = $1::uuid
            order by detected_at asc, id asc
            """,
            opportunity_id,
        )
        return [dict(row) for row in rows]

    async def queue_documents(self, opportunity_id: str, urls: list[str]) -> int:
        if not urls:
            return 0
        pool = await self._get_pool()
        queued = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for url in urls:
                    inserted = await conn.fetchval(
                        """
                        insert into documents (opportunity_id, filename, original_url)
                        values ($1::uuid, $2, $3)
                        on conflict (opportunity_id, original_url) do nothing
                        returning 1
                        """,
                        opportunity_id,
                        self._filename_from_url(url),
                        url,
                    )
                    queued += 1 if inserted else 0
        return queued

    # -- tenants -----------------------------------------------------------

    async def list_eligible_tenant_profiles(self) -> list[TenantProfile]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              t.id::text as tenant_id,
              t.name as tenant_name,
              p.primary_naics,
              p.secondary_naics,
              p.keyword_domains,
              p.is_small_business,
              p.is_sdvosb,
              p.is_wosb,
              p.is_hubzone,
              p.is_8a,
              p.agency_priorities,
              p.min_contract_value,
              p.max_contract_value,
              p.min_surface_score,
              p.high_priority_score
            from tenants t
            join tenant_profiles p on p.tenant_id = t.id
            where t.status = any($1::text[])
            order by t.created_at asc
            """,
            list(ELIGIBLE_TENANT_STATUSES),
        )
        return [self._tenant_profile_row_to_model(row) for row in rows]

    async def list_scored_tenant_ids(self, opportunity_id: str) -> set[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select tenant_id::text as tenant_id from tenant_opportunities where opportunity_id = $1::uuid",
            opportunity_id,
        )
        return {row["tenant_id"] for row in rows}

    async def upsert_tenant_opportunity(
        self,
        *,
        tenant_id: str,
        opportunity_id: str,
        breakdown: ScoreBreakdown,
        create: bool,
    ) -> str:
        params = [
            tenant_id,
            opportunity_id,
            self._decimal(breakdown.total_score),
            self._decimal(breakdown.naics_score),
            self._decimal(breakdown.keyword_score),
            self._decimal(breakdown.set_aside_score),
            self._decimal(breakdown.agency_score),
            self._decimal(breakdown.type_score),
            self._decimal(breakdown.timeline_score),
            self._decimal(breakdown.llm_adjustment),
            breakdown.llm_rationale,
            breakdown.matched_keywords,
            breakdown.matched_domains,
            breakdown.pursuit_recommendation,
            breakdown.key_requirements,
            breakdown.competitive_risks,
            breakdown.questions_for_rfi,
        ]
        pool = await self._get_pool()
        if create:
            inserted = await pool.fetchval(
                """
                insert into tenant_opportunities (
                  tenant_id, opportunity_id, total_score, naics_score, keyword_score, set_aside_score,
                  agency_score, type_score, timeline_score, llm_adjustment, llm_rationale,
                  matched_keywords, matched_domains, pursuit_recommendation, key_requirements,
                  competitive_risks, questions_for_rfi
                )
                values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                on conflict (tenant_id, opportunity_id) do update
                set
                  total_score = excluded.total_score,
                  naics_score = excluded.naics_score,
                  keyword_score = excluded.keyword_score,
                  set_aside_score = excluded.set_aside_score,
                  agency_score = excluded.agency_score,
                  type_score = excluded.type_score,
                  timeline_score = excluded.timeline_score,
                  llm_adjustment = excluded.llm_adjustment,
                  llm_rationale = excluded.llm_rationale,
                  matched_keywords = excluded.matched_keywords,
                  matched_domains = excluded.matched_domains,
                  pursuit_recommendation = excluded.pursuit_recommendation,
                  key_requirements = excluded.key_requirements,
                  competitive_risks = excluded.competitive_risks,
                  questions_for_rfi = excluded.questions_for_rfi,
                  rescored_at = now()
                returning (xmax = 0) as inserted
                """,
                *params,
            )
            return "created" if inserted else "updated"

        updated = await pool.fetchval(
            """
            update tenant_opportunities
            set
              total_score = $3, naics_score = $4, keyword_score = $5, set_aside_score = $6,
              agency_score = $7, type_score = $8, timeline_score = $9, llm_adjustment = $10,
              llm_rationale = $11, matched_keywords = $12, matched_domains = $13,
              pursuit_recommendation = $14, key_requirements = $15, competitive_risks = $16,
              questions_for_rfi = $17, rescored_at = now()
            where tenant_id = $1::uuid and opportunity_id = $2::uuid
            returning 1
            """,
            *params,
        )
        return "updated" if updated else "skipped"

    # -- digests -----------------------------------------------------------

    async def list_digest_recipients(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as tenant_id, name, primary_email
            from tenants
            where status = any($1::text[])
              and primary_email is not null
              and primary_email <> ''
            order by created_at asc
            """,
            list(ELIGIBLE_TENANT_STATUSES),
        )
        return [dict(row) for row in rows]

    async def list_digest_opportunities(
        self,
        *,
        tenant_id: str,
        since: datetime,
        min_score: float,
        limit: int = 25,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              o.id::text as opportunity_id,
              o.title,
              o.agency,
              o.close_date,
              o.source_url,
              t.total_score
            from tenant_opportunities t
            join opportunities o on o.id = t.opportunity_id
            where t.tenant_id = $1::uuid
              and t.scored_at >= $2
              and t.total_score >= $3
              and o.status = 'active'
            order by t.total_score desc, o.close_date asc nulls last
            limit $4
            """,
            tenant_id,
            since,
            self._decimal(min_score),
            limit,
        )
        return [{**dict(row), "total_score": float(row["total_score"])} for row in rows]

    async def list_unnotified_amendments(self, *, tenant_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              a.id::text as id,
              a.opportunity_id::text as opportunity_id,
              o.title,
              a.change_type,
              a.old_value,
              a.new_value,
              a.detected_at
            from amendments a
            join opportunities o on o.id = a.opportunity_id
            join tenant_opportunities t on t.opportunity_id = a.opportunity_id
            where t.tenant_id = $1::uuid
              and a.notified = false
            order by a.detected_at asc
            """,
            tenant_id,
        )
        return [dict(row) for row in rows]

    async def enqueue_notification(
        self,
        *,
        tenant_id: str,
        recipient: str,
        notification_type: str,
        subject: str,
        body_text: str,
        related_ids: list[str],
        priority: int = 5,
        scheduled_for: datetime | None = None,
    ) -> str:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into notifications_queue (
              tenant_id, recipient, notification_type, subject, body_text, related_ids, priority, scheduled_for
            )
            values ($1::uuid, $2, $3, $4, $5, $6::jsonb, $7, coalesce($8, now()))
            returning id::text
            """,
            tenant_id,
            recipient,
            notification_type,
            subject,
            body_text,
            json.dumps(related_ids),
            priority,
            scheduled_for,
        )

    async def mark_amendments_notified(self, amendment_ids: list[str]) -> int:
        if not amendment_ids:
            return 0
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update amendments
            set notified = true, notified_at = now()
            where id = any($1::uuid[])
              and notified = false
            returning id
            """,
            amendment_ids,
        )
        return len(rows)

    # -- config, audit, health ---------------------------------------------

    async def load_runtime_config_values(self) -> dict[str, Any]:
        pool = await self._get_pool()
        rows = await pool.fetch("select key, value from system_config")
        values: dict[str, Any] = {}
        for row in rows:
            raw = row["value"]
            if isinstance(raw, str):
                try:
                    raw = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("ignoring malformed system_config value key=%s", row["key"])
                    continue
            values[row["key"]] = raw
        return values

    async def record_pipeline_run(self, run: PipelineRunRecord) -> str:
        stats = run.stats
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into pipeline_runs (
              job_id, source, run_type, status, started_at, completed_at,
              opportunities_fetched, opportunities_new, opportunities_updated, tenants_scored,
              documents_queued, llm_calls_made, llm_tokens_used, llm_cost_usd, amendments_detected,
              errors, metadata
            )
            values (
              $1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16::jsonb, $17::jsonb
            )
            returning id::text
            """,
            run.job_id,
            run.source,
            run.run_type,
            run.status,
            run.started_at,
            run.completed_at,
            stats.opportunities_fetched,
            stats.opportunities_new,
            stats.opportunities_updated,
            stats.tenants_scored,
            stats.documents_queued,
            stats.llm_calls_made,
            stats.llm_tokens_used,
            self._decimal(stats.llm_cost_usd, places=4),
            stats.amendments_detected,
            json.dumps(stats.errors, default=str),
            json.dumps({**run.metadata, "duration_seconds": run.duration_seconds}, default=str),
        )

    async def update_source_health(
        self,
        source: str,
        *,
        run_status: str,
        error_message: str | None = None,
        fatal: bool = False,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "insert into source_health (source) values ($1) on conflict (source) do nothing",
                    source,
                )
                current = await conn.fetchrow(
                    """
                    select consecutive_failures, needs_attention
                    from source_health
                    where source = $1
                    for update
                    """,
                    source,
                )
                aggregates = await conn.fetchrow(
                    """
                    select
                      count(*) filter (where status = 'completed') as succeeded,
                      count(*) filter (where status in ('completed', 'failed')) as finished,
                      avg(extract(epoch from (completed_at - started_at)))
                        filter (where status = 'completed') as avg_duration
                    from pipeline_runs
                    where source = $1
                      and started_at > now() - interval '30 days'
                    """,
                    source,
                )
                consecutive_failures = next_consecutive_failures(
                    int(current["consecutive_failures"]),
                    run_status=run_status,
                )
                if fatal:
                    needs_attention = True
                elif run_status == "completed":
                    needs_attention = False
                else:
                    needs_attention = bool(current["needs_attention"])
                status = derive_health_status(
                    consecutive_failures=consecutive_failures,
                    needs_attention=needs_attention,
                )
                finished = int(aggregates["finished"] or 0)
                success_rate = (
                    round(100.0 * int(aggregates["succeeded"] or 0) / finished, 2) if finished else None
                )
                avg_duration = (
                    round(float(aggregates["avg_duration"]), 2) if aggregates["avg_duration"] is not None else None
                )
                row = await conn.fetchrow(
                    """
                    update source_health
                    set
                      status = $2,
                      consecutive_failures = $3,
                      needs_attention = $4,
                      last_success_at = case when $5 = 'completed' then now() else last_success_at end,
                      last_error_at = case when $5 = 'failed' then now() else last_error_at end,
                      last_error_message = case when $5 = 'failed' then $6 else last_error_message end,
                      success_rate_30d = $7,
                      avg_duration_seconds = $8,
                      updated_at = now()
                    where source = $1
                    returning source, status, consecutive_failures, needs_attention,
                              success_rate_30d, avg_duration_seconds, last_success_at,
                              last_error_at, last_error_message
                    """,
                    source,
                    status,
                    consecutive_failures,
                    needs_attention,
                    run_status,
                    error_message,
                    self._decimal(success_rate),
                    self._decimal(avg_duration),
                )
                return self._source_health_row_to_dict(row)

    async def get_system_status(self, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            job_rows = await conn.fetch("select status, count(*) as total from pipeline_jobs group by status")
            failed_24h = await conn.fetchval(
                """
                select count(*)
                from pipeline_jobs
                where status = 'failed'
                  and completed_at > now() - interval '24 hours'
                """
            )
            tenant_rows = await conn.fetch("select status, count(*) as total from tenants group by status")
            health_rows = await conn.fetch(
                """
                select source, status, consecutive_failures, needs_attention, success_rate_30d,
                       avg_duration_seconds, last_success_at, last_error_at, last_error_message
                from source_health
                order by source asc
                """
            )
            key_rows = await conn.fetch(
                "select source, expires_date, days_warning, is_valid from api_key_registry order by source asc"
            )

        rate_states = await self.list_rate_limits()

        jobs = {status: 0 for status in sorted(JOB_STATUSES)}
        for row in job_rows:
            jobs[row["status"]] = int(row["total"])
        jobs["failed_24h"] = int(failed_24h or 0)

        tenants: dict[str, int] = {}
        for row in tenant_rows:
            tenants[row["status"]] = int(row["total"])
        tenants["total"] = sum(tenants.values())

        rate_limits = summarize_usage(rate_states, now=current)

        api_keys = {
            row["source"]: {
                "expiry_status": api_key_expiry_status(
                    expires_date=row["expires_date"],
                    days_warning=int(row["days_warning"]),
                    today=current.date(),
                ),
                "is_valid": bool(row["is_valid"]),
            }
            for row in key_rows
        }

        return {
            "pipeline_jobs": jobs,
            "tenants": tenants,
            "source_health": {row["source"]: self._source_health_row_to_dict(row) for row in health_rows},
            "rate_limits": rate_limits,
            "api_keys": api_keys,
            "checked_at": current,
        }

    # -- helpers -----------------------------------------------------------

    async def _fetch_opportunity_for_update(
        self,
        conn: asyncpg.Connection,
        source: str,
        source_id: str,
    ) -> asyncpg.Record | None:
        return await conn.fetchrow(
            f"""
            select {_OPPORTUNITY_COLUMNS}
            from opportunities
            where source = $1 and source_id = $2
            for update
            """,
            source,
            source_id,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("GTI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _opportunity_params(self, opportunity: Opportunity) -> list[Any]:
        return [
            opportunity.source,
            opportunity.source_id,
            opportunity.title,
            opportunity.description,
            opportunity.agency,
            opportunity.agency_code,
            opportunity.naics_codes,
            opportunity.set_aside_type,
            opportunity.set_aside_code,
            opportunity.opportunity_type,
            opportunity.posted_date,
            opportunity.close_date,
            self._decimal(opportunity.estimated_value_min),
            self._decimal(opportunity.estimated_value_max),
            opportunity.solicitation_number,
            opportunity.contract_number,
            opportunity.source_url,
            json.dumps(opportunity.document_urls),
            opportunity.content_hash,
            opportunity.status,
            json.dumps(opportunity.raw_data, default=str),
        ]

    def _resolve_failure_transition(self, *, attempt: int, max_attempts: int, retryable: bool) -> FailureTransition:
        if retryable and attempt < max_attempts:
            return FailureTransition(
                status="pending",
                attempt=attempt + 1,
                retry_delay_seconds=self._compute_retry_delay_seconds(attempt=attempt),
            )
        return FailureTransition(status="failed", attempt=attempt, retry_delay_seconds=None)

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)

    def _job_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        result = row["result"]
        return {
            "id": row["id"],
            "source": row["source"],
            "run_type": row["run_type"],
            "status": row["status"],
            "triggered_by": row["triggered_by"],
            "triggered_at": row["triggered_at"],
            "available_at": row["available_at"],
            "started_at": row["started_at"],
            "completed_at": row["completed_at"],
            "worker_id": row["worker_id"],
            "priority": int(row["priority"]),
            "attempt": int(row["attempt"]),
            "max_attempts": int(row["max_attempts"]),
            "timeout_seconds": int(row["timeout_seconds"]),
            "parameters": self._coerce_json_dict(row["parameters"]),
            "result": self._coerce_json_dict(result) if result is not None else None,
            "error_message": row["error_message"],
        }

    @staticmethod
    def _schedule_row_to_record(row: asyncpg.Record) -> ScheduleRecord:
        return ScheduleRecord(
            id=row["id"],
            source=row["source"],
            display_name=row["display_name"],
            run_type=row["run_type"],
            cron_expression=row["cron_expression"],
            timezone=row["timezone"],
            enabled=bool(row["enabled"]),
            priority=int(row["priority"]),
            timeout_minutes=int(row["timeout_minutes"]),
            last_run_at=row["last_run_at"],
            next_run_at=row["next_run_at"],
        )

    @staticmethod
    def _rate_limit_row_to_state(row: asyncpg.Record) -> RateLimitState:
        return RateLimitState(
            source=row["source"],
            requests_today=int(row["requests_today"]),
            requests_this_hour=int(row["requests_this_hour"]),
            daily_limit=row["daily_limit"],
            hourly_limit=row["hourly_limit"],
            daily_window_start=row["daily_window_start"],
            hourly_window_start=row["hourly_window_start"],
            last_request_at=row["last_request_at"],
            last_reset_at=row["last_reset_at"],
        )

    def _opportunity_row_to_model(self, row: asyncpg.Record) -> Opportunity:
        return Opportunity(
            id=row["id"],
            source=row["source"],
            source_id=row["source_id"],
            title=row["title"],
            description=row["description"],
            agency=row["agency"],
            agency_code=row["agency_code"],
            naics_codes=list(row["naics_codes"] or []),
            set_aside_type=row["set_aside_type"],
            set_aside_code=row["set_aside_code"],
            opportunity_type=row["opportunity_type"],
            posted_date=row["posted_date"],
            close_date=row["close_date"],
            estimated_value_min=self._coerce_float(row["estimated_value_min"]),
            estimated_value_max=self._coerce_float(row["estimated_value_max"]),
            solicitation_number=row["solicitation_number"],
            contract_number=row["contract_number"],
            source_url=row["source_url"],
            document_urls=[item for item in self._coerce_json_list(row["document_urls"]) if isinstance(item, str)],
            content_hash=row["content_hash"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _tenant_profile_row_to_model(self, row: asyncpg.Record) -> TenantProfile:
        keyword_domains: dict[str, list[str]] = {}
        for domain, keywords in self._coerce_json_dict(row["keyword_domains"]).items():
            if isinstance(keywords, list):
                keyword_domains[str(domain)] = [item for item in keywords if isinstance(item, str) and item.strip()]
        agency_priorities: dict[str, int] = {}
        for agency, tier in self._coerce_json_dict(row["agency_priorities"]).items():
            parsed_tier = self._coerce_int(tier)
            if parsed_tier is not None:
                agency_priorities[str(agency)] = parsed_tier
        return TenantProfile(
            tenant_id=row["tenant_id"],
            tenant_name=row["tenant_name"],
            primary_naics=list(row["primary_naics"] or []),
            secondary_naics=list(row["secondary_naics"] or []),
            keyword_domains=keyword_domains,
            is_small_business=bool(row["is_small_business"]),
            is_sdvosb=bool(row["is_sdvosb"]),
            is_wosb=bool(row["is_wosb"]),
            is_hubzone=bool(row["is_hubzone"]),
            is_8a=bool(row["is_8a"]),
            agency_priorities=agency_priorities,
            min_contract_value=self._coerce_float(row["min_contract_value"]),
            max_contract_value=self._coerce_float(row["max_contract_value"]),
            min_surface_score=float(row["min_surface_score"]),
            high_priority_score=float(row["high_priority_score"]),
        )

    def _source_health_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "source": row["source"],
            "status": row["status"],
            "consecutive_failures": int(row["consecutive_failures"]),
            "needs_attention": bool(row["needs_attention"]),
            "success_rate_30d": self._coerce_float(row["success_rate_30d"]),
            "avg_duration_seconds": self._coerce_float(row["avg_duration_seconds"]),
            "last_success_at": row["last_success_at"],
            "last_error_at": row["last_error_at"],
            "last_error_message": row["last_error_message"],
        }

    @staticmethod
    def _filename_from_url(url: str) -> str:
        path = urlparse(url).path
        name = unquote(path.rsplit("/", maxsplit=1)[-1]) if path else ""
        return name or "document"

    @staticmethod
    def _decimal(value: float | None, *, places: int = 2) -> Decimal | None:
        if value is None:
            return None
        return round(Decimal(str(value)), places)

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_list(value: Any) -> list[Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        return value if isinstance(value, list) else []

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value if isinstance(value, dict) else {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
        job_default_timeout_seconds=settings.job_default_timeout_seconds,
        job_default_priority=settings.job_default_priority,
        wake_channel=settings.wake_channel,
    )
