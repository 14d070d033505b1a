from __future__ import annotations

import logging
from datetime import datetime, timezone

from govintel.core.errors import AnalysisError
from govintel.jobs.context import JobContext
from govintel.services.opportunities import Opportunity
from govintel.services.scoring import (
    ScoreBreakdown,
    TenantProfile,
    apply_qualitative_adjustment,
    needs_qualitative_review,
    score_opportunity,
    should_surface,
)

logger = logging.getLogger(__name__)


async def score_for_tenants(
    ctx: JobContext,
    opportunity: Opportunity,
    profiles: list[TenantProfile],
    *,
    now: datetime | None = None,
) -> int:
    """Score one opportunity for each profile and persist the results.

    New tenant rows are only created when the opportunity surfaces for the
    tenant; rows that already exist are always refreshed. Returns the number
    of tenant rows written.
    """
    if opportunity.id is None:
        raise ValueError("opportunity must be persisted before it is scored")

    current = now or datetime.now(timezone.utc)
    written = 0
    for profile in profiles:
        breakdown = score_opportunity(opportunity, profile, rules=ctx.config.scoring_rules, now=current)
        breakdown = await _maybe_adjust(ctx, opportunity, profile, breakdown)
        outcome = await ctx.repository.upsert_tenant_opportunity(
            tenant_id=profile.tenant_id,
            opportunity_id=opportunity.id,
            breakdown=breakdown,
            create=should_surface(breakdown, opportunity, profile),
        )
        if outcome != "skipped":
            written += 1
    ctx.stats.tenants_scored += written
    return written


async def _maybe_adjust(
    ctx: JobContext,
    opportunity: Opportunity,
    profile: TenantProfile,
    breakdown: ScoreBreakdown,
) -> ScoreBreakdown:
    if ctx.analyzer is None or not ctx.config.llm_analysis_enabled:
        return breakdown
    if not needs_qualitative_review(breakdown, trigger_score=ctx.config.llm_trigger_score):
        return breakdown

    quota = await ctx.repository.acquire_quota(ctx.analyzer_rate_limit_source)
    if not quota.can_proceed:
        ctx.stats.analysis_skipped += 1
        logger.info(
            "analysis quota exhausted source=%s opportunity=%s tenant=%s",
            ctx.analyzer_rate_limit_source,
            opportunity.source_id,
            profile.tenant_id,
        )
        return breakdown

    try:
        analysis = await ctx.analyzer.analyze(opportunity, profile)
    except AnalysisError as exc:
        logger.warning("analysis failed opportunity=%s tenant=%s: %s", opportunity.source_id, profile.tenant_id, exc)
        ctx.stats.record_error(stage="analysis", message=str(exc), source_id=opportunity.source_id)
        return breakdown

    ctx.stats.llm_calls_made += 1
    ctx.stats.llm_tokens_used += analysis.tokens_used
    ctx.stats.llm_cost_usd += analysis.cost_usd
    return apply_qualitative_adjustment(breakdown, analysis, max_adjustment=ctx.config.llm_max_adjustment)
