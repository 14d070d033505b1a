from __future__ import annotations

import logging

import asyncpg  # type: ignore[import-untyped]

from govintel.jobs.context import JobContext
from govintel.jobs.tenant_scoring import score_for_tenants
from govintel.services.repository import RepositoryConflictError, RepositoryValidationError

logger = logging.getLogger(__name__)

RESCORE_PAGE_SIZE = 200


async def execute_rescore(ctx: JobContext) -> None:
    profiles = await ctx.repository.list_eligible_tenant_profiles()
    if not profiles:
        logger.info("no eligible tenants; nothing to rescore")
        return

    page_size = int(ctx.parameters.get("page_size") or RESCORE_PAGE_SIZE)
    offset = 0
    while True:
        page = await ctx.repository.list_active_opportunities(limit=page_size, offset=offset)
        if not page:
            break
        for opportunity in page:
            await ctx.checkpoint()
            ctx.stats.opportunities_fetched += 1
            try:
                await score_for_tenants(ctx, opportunity, profiles)
            except (RepositoryConflictError, RepositoryValidationError, asyncpg.PostgresError) as exc:
                logger.exception("failed to rescore opportunity=%s", opportunity.id)
                ctx.stats.record_error(stage="score", message=str(exc), source_id=opportunity.source_id)
        if len(page) < page_size:
            break
        offset += page_size

    logger.info(
        "rescored opportunities=%s tenant_rows=%s",
        ctx.stats.opportunities_fetched,
        ctx.stats.tenants_scored,
    )
