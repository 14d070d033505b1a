from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)


def lease_deadline(job: dict[str, Any], *, grace_seconds: int = 0) -> datetime | None:
    started_at = job.get("started_at")
    if not started_at:
        return None

    if isinstance(started_at, str):
        started_at = datetime.fromisoformat(started_at.replace("Z", "+00:00"))

    timeout_seconds = int(job.get("timeout_seconds") or 0)
    return started_at + timedelta(seconds=timeout_seconds + grace_seconds)


def lease_expired(job: dict[str, Any], *, grace_seconds: int = 0, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    deadline = lease_deadline(job, grace_seconds=grace_seconds)
    if deadline is None:
        return False
    return deadline <= now


def should_reap(job: dict[str, Any], *, grace_seconds: int, now: datetime | None = None) -> bool:
    return job.get("status") == "running" and lease_expired(job, grace_seconds=grace_seconds, now=now)


async def reap_expired_leases(repository: Any, *, grace_seconds: int, batch_size: int) -> int:
    reaped = await repository.fail_expired_running_jobs(grace_seconds=grace_seconds, limit=batch_size)
    if reaped:
        logger.warning("failed expired job leases: %s", reaped)
    return reaped
