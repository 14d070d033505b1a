import asyncio

import pytest

from govintel.core.config import Settings
from govintel.core.errors import FatalJobError
from govintel.jobs import executor
from govintel.jobs.context import JobContext
from govintel.services.runtime_config import build_runtime_config


def _context(job) -> JobContext:
    return JobContext(
        job=job,
        worker_id="worker-1",
        repository=object(),
        config=build_runtime_config({}, Settings(database_url=None)),
        connector=object(),
    )


@pytest.mark.parametrize(
    ("run_type", "handler"),
    [
        ("full", "execute_ingest"),
        ("incremental", "execute_ingest"),
        ("refresh", "execute_ingest"),
        ("intel", "execute_ingest"),
        ("score", "execute_rescore"),
        ("notify", "execute_digest"),
    ],
)
def test_execute_job_dispatches_by_run_type(monkeypatch, job_factory, run_type: str, handler: str) -> None:
    called: list[str] = []

    async def fake_handler(ctx: JobContext) -> None:
        called.append(ctx.run_type)

    monkeypatch.setattr(executor, handler, fake_handler)
    asyncio.run(executor.execute_job(_context(job_factory(run_type=run_type))))

    assert called == [run_type]


def test_unknown_run_type_raises_fatal_error(job_factory) -> None:
    with pytest.raises(FatalJobError):
        asyncio.run(executor.execute_job(_context(job_factory(run_type="backfill"))))
