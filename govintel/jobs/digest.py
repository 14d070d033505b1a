from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from govintel.jobs.context import JobContext
from govintel.services.opportunities import render_field_value

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_HOURS = 24
DIGEST_NOTIFICATION_TYPE = "daily_digest"


@dataclass(slots=True)
class DigestMessage:
    subject: str
    body_text: str
    related_ids: list[str]


def build_digest_message(
    *,
    tenant_name: str | None,
    opportunities: list[dict[str, Any]],
    amendments: list[dict[str, Any]],
    now: datetime,
) -> DigestMessage:
    heading = f"Opportunity digest for {tenant_name}" if tenant_name else "Opportunity digest"
    subject = (
        f"{len(opportunities)} new high-priority opportunities, {len(amendments)} amendments"
        f" ({now.astimezone(timezone.utc).date().isoformat()})"
    )
    lines = [heading, ""]
    if opportunities:
        lines.append("New high-priority opportunities:")
        for item in opportunities:
            close = render_field_value(item.get("close_date")) or "no close date"
            agency = item.get("agency") or "unknown agency"
            lines.append(f"- [{item['total_score']:.1f}] {item['title']} ({agency}, closes {close})")
            if item.get("source_url"):
                lines.append(f"  {item['source_url']}")
        lines.append("")
    if amendments:
        lines.append("Amendments to tracked opportunities:")
        for item in amendments:
            lines.append(
                f"- {item['title']}: {item['change_type']} changed from "
                f"{item.get('old_value') or '(empty)'} to {item.get('new_value') or '(empty)'}"
            )

    related_ids = [item["opportunity_id"] for item in opportunities]
    for item in amendments:
        if item["opportunity_id"] not in related_ids:
            related_ids.append(item["opportunity_id"])
    return DigestMessage(subject=subject, body_text="\n".join(lines).rstrip() + "\n", related_ids=related_ids)


async def execute_digest(ctx: JobContext) -> None:
    now = datetime.now(timezone.utc)
    lookback_hours = int(ctx.parameters.get("lookback_hours") or DEFAULT_LOOKBACK_HOURS)
    since = now - timedelta(hours=lookback_hours)
    recipients = await ctx.repository.list_digest_recipients()

    notified_amendments: set[str] = set()
    for tenant in recipients:
        await ctx.checkpoint()
        opportunities = await ctx.repository.list_digest_opportunities(
            tenant_id=tenant["tenant_id"],
            since=since,
            min_score=ctx.config.digest_min_score,
        )
        amendments = await ctx.repository.list_unnotified_amendments(tenant_id=tenant["tenant_id"])
        if not opportunities and not amendments:
            continue

        message = build_digest_message(
            tenant_name=tenant.get("name"),
            opportunities=opportunities,
            amendments=amendments,
            now=now,
        )
        await ctx.repository.enqueue_notification(
            tenant_id=tenant["tenant_id"],
            recipient=tenant["primary_email"],
            notification_type=DIGEST_NOTIFICATION_TYPE,
            subject=message.subject,
            body_text=message.body_text,
            related_ids=message.related_ids,
        )
        ctx.stats.notifications_queued += 1
        notified_amendments.update(item["id"] for item in amendments)

    marked = await ctx.repository.mark_amendments_notified(sorted(notified_amendments))
    logger.info("queued digests=%s amendments_marked=%s", ctx.stats.notifications_queued, marked)
