from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from govintel.core.config import Settings
from govintel.services.runtime_config import load_runtime_config

logger = logging.getLogger(__name__)


async def run_scheduler_tick(repository: Any, settings: Settings, *, now: datetime | None = None) -> list[dict[str, Any]]:
    config = await load_runtime_config(repository, settings)
    enqueued = await repository.enqueue_due_schedules(now=now, max_attempts=config.max_attempts)
    for job in enqueued:
        logger.info(
            "scheduled job id=%s source=%s run_type=%s priority=%s",
            job["id"],
            job["source"],
            job["run_type"],
            job["priority"],
        )
    return enqueued
