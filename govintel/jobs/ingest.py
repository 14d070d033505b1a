from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from govintel.core.errors import JobError, RateLimitDeferred, RecordValidationError
from govintel.jobs.context import JobContext
from govintel.jobs.tenant_scoring import score_for_tenants
from govintel.services.opportunities import normalize_record
from govintel.services.rate_limits import hour_start
from govintel.services.repository import RepositoryConflictError, RepositoryValidationError
from govintel.services.scoring import TenantProfile

logger = logging.getLogger(__name__)

INGEST_RUN_TYPES = frozenset({"full", "incremental", "refresh", "intel"})


async def execute_ingest(ctx: JobContext) -> None:
    now = datetime.now(timezone.utc)
    quota = await ctx.repository.acquire_quota(ctx.source, now=now)
    if not quota.can_proceed:
        raise RateLimitDeferred(ctx.source, quota.retry_at or _next_hour(now))

    records = await ctx.connector.fetch(ctx.source, ctx.run_type, ctx.parameters)
    ctx.stats.opportunities_fetched = len(records)
    profiles = await ctx.repository.list_eligible_tenant_profiles()
    logger.info(
        "ingesting source=%s run_type=%s records=%s tenants=%s",
        ctx.source,
        ctx.run_type,
        len(records),
        len(profiles),
    )

    for raw in records:
        await ctx.checkpoint()
        source_id = _raw_source_id(raw)
        try:
            await ingest_record(ctx, raw, profiles)
        except RecordValidationError as exc:
            logger.warning("skipping invalid record source=%s: %s", ctx.source, exc)
            ctx.stats.record_error(stage="normalize", message=str(exc), source_id=source_id)
        except (RepositoryConflictError, RepositoryValidationError, asyncpg.PostgresError) as exc:
            logger.exception("failed to persist record source=%s source_id=%s", ctx.source, source_id)
            ctx.stats.record_error(stage="persist", message=str(exc), source_id=source_id)
        except JobError:
            raise
        except Exception as exc:
            logger.exception("unexpected failure ingesting record source=%s source_id=%s", ctx.source, source_id)
            ctx.stats.record_error(stage="ingest", message=f"{type(exc).__name__}: {exc}", source_id=source_id)


async def ingest_record(ctx: JobContext, raw: Any, profiles: list[TenantProfile]) -> None:
    opportunity = normalize_record(ctx.source, raw)
    outcome = await ctx.repository.upsert_opportunity(opportunity)
    stored = outcome.opportunity

    if outcome.created:
        ctx.stats.opportunities_new += 1
    elif outcome.changed:
        ctx.stats.opportunities_updated += 1
        ctx.stats.amendments_detected += len(outcome.amendments)
    else:
        ctx.stats.opportunities_unchanged += 1

    if outcome.created or outcome.changed:
        if ctx.config.document_download_enabled and stored.document_urls:
            ctx.stats.documents_queued += await ctx.repository.queue_documents(stored.id, stored.document_urls)
        targets = profiles
    else:
        already_scored = await ctx.repository.list_scored_tenant_ids(stored.id)
        targets = [profile for profile in profiles if profile.tenant_id not in already_scored]

    if targets:
        await score_for_tenants(ctx, stored, targets)


def _raw_source_id(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    for key in ("source_id", "id", "notice_id", "noticeId", "opportunity_id"):
        value = raw.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _next_hour(now: datetime) -> datetime:
    return hour_start(now) + timedelta(hours=1)
