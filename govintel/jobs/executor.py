from __future__ import annotations

from govintel.core.errors import FatalJobError
from govintel.jobs.context import JobContext
from govintel.jobs.digest import execute_digest
from govintel.jobs.ingest import INGEST_RUN_TYPES, execute_ingest
from govintel.jobs.rescore import execute_rescore


async def execute_job(ctx: JobContext) -> None:
    run_type = ctx.run_type
    if run_type in INGEST_RUN_TYPES:
        await execute_ingest(ctx)
        return
    if run_type == "score":
        await execute_rescore(ctx)
        return
    if run_type == "notify":
        await execute_digest(ctx)
        return

    raise FatalJobError(f"unknown run type {run_type!r} for source={ctx.source}")
