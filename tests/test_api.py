from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from govintel.main import app
from govintel.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from govintel.services.schedules import ScheduleRecord

JOB_ID = "11111111-1111-1111-1111-111111111111"


def _job(**overrides: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    job = {
        "id": JOB_ID,
        "source": "sam_gov",
        "run_type": "incremental",
        "status": "pending",
        "triggered_by": "manual",
        "triggered_at": now,
        "available_at": now,
        "started_at": None,
        "completed_at": None,
        "worker_id": None,
        "priority": 2,
        "attempt": 1,
        "max_attempts": 3,
        "timeout_seconds": 3600,
        "parameters": {},
        "result": None,
        "error_message": None,
    }
    job.update(overrides)
    return job


class FakeAdminRepository:
    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {JOB_ID: _job()}
        self.enqueued: list[dict[str, Any]] = []
        self.config_values: dict[str, Any] = {"pipeline.retry_attempts": 5}
        self.unavailable = False

    async def load_runtime_config_values(self) -> dict[str, Any]:
        return dict(self.config_values)

    async def list_jobs(self, *, status: str | None, source: str | None, limit: int, offset: int):
        if self.unavailable:
            raise RepositoryUnavailableError("database unavailable")
        if status == "bogus":
            raise RepositoryValidationError("status must be one of: cancelled, completed, failed, pending, running")
        rows = [job for job in self.jobs.values() if status is None or job["status"] == status]
        return rows[offset : offset + limit]

    async def enqueue_job(self, **kwargs: Any) -> dict[str, Any]:
        self.enqueued.append(kwargs)
        job = _job(
            id="22222222-2222-2222-2222-222222222222",
            source=kwargs["source"],
            run_type=kwargs["run_type"] or "full",
            max_attempts=kwargs["max_attempts"],
            parameters=kwargs["parameters"],
        )
        self.jobs[job["id"]] = job
        return job

    async def get_job(self, job_id: str) -> dict[str, Any]:
        if job_id not in self.jobs:
            raise RepositoryNotFoundError("job not found")
        return self.jobs[job_id]

    async def list_job_events(self, job_id: str) -> list[dict[str, Any]]:
        return [
            {
                "id": 1,
                "job_id": job_id,
                "event_type": "enqueued",
                "worker_id": None,
                "payload": {"triggered_by": "manual"},
                "created_at": datetime.now(timezone.utc),
            }
        ]

    async def cancel_job(self, job_id: str, *, actor: str | None = None) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job["status"] not in {"pending", "running"}:
            raise RepositoryConflictError("job is not cancellable")
        job["status"] = "cancelled"
        return job

    async def list_schedules(self) -> list[ScheduleRecord]:
        return [
            ScheduleRecord(
                id="s-1",
                source="sam_gov",
                display_name="SAM.gov",
                run_type="incremental",
                cron_expression="0 */4 * * *",
                timezone="UTC",
                enabled=True,
                priority=2,
                timeout_minutes=60,
                last_run_at=None,
                next_run_at=datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc),
            )
        ]

    async def enqueue_due_schedules(self, *, now=None, max_attempts=None, limit: int = 100):
        self.enqueued.append({"max_attempts": max_attempts})
        return [_job(id="33333333-3333-3333-3333-333333333333", triggered_by="scheduler")]

    async def get_system_status(self) -> dict[str, Any]:
        return {
            "pipeline_jobs": {"pending": 1, "running": 0, "completed": 4, "failed": 1, "cancelled": 0, "failed_24h": 1},
            "tenants": {"active": 2, "trial": 1, "total": 3},
            "source_health": {
                "sam_gov": {
                    "source": "sam_gov",
                    "status": "degraded",
                    "consecutive_failures": 1,
                    "needs_attention": False,
                    "success_rate_30d": 92.5,
                    "avg_duration_seconds": 41.2,
                    "last_success_at": None,
                    "last_error_at": None,
                    "last_error_message": "503",
                }
            },
            "rate_limits": {"sam_gov": {"daily_used": 10, "daily_limit": 1000, "hourly_used": 10, "hourly_limit": None}},
            "api_keys": {"sam_gov": {"expiry_status": "expiring_soon", "is_valid": True}},
            "checked_at": datetime.now(timezone.utc),
        }


@pytest.fixture
def fake_repo() -> FakeAdminRepository:
    return FakeAdminRepository()


@pytest.fixture
def api_client(fake_repo: FakeAdminRepository) -> TestClient:
    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def test_status_aggregate(api_client: TestClient) -> None:
    response = api_client.get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["pipeline_jobs"]["failed_24h"] == 1
    assert body["tenants"]["total"] == 3
    assert body["source_health"]["sam_gov"]["status"] == "degraded"
    assert body["rate_limits"]["sam_gov"]["daily_limit"] == 1000
    assert body["api_keys"]["sam_gov"]["expiry_status"] == "expiring_soon"


def test_list_jobs_filters_and_validates(api_client: TestClient, fake_repo: FakeAdminRepository) -> None:
    assert len(api_client.get("/jobs", params={"status": "pending"}).json()) == 1
    assert api_client.get("/jobs", params={"status": "bogus"}).status_code == 422

    fake_repo.unavailable = True
    assert api_client.get("/jobs").status_code == 503


def test_manual_trigger_uses_runtime_max_attempts(api_client: TestClient, fake_repo: FakeAdminRepository) -> None:
    response = api_client.post("/jobs", json={"source": "sbir", "priority": 1, "parameters": {"since": "2026-03-01"}})

    assert response.status_code == 201
    assert response.json()["max_attempts"] == 5
    assert fake_repo.enqueued[0]["triggered_by"] == "manual"
    assert fake_repo.enqueued[0]["priority"] == 1


def test_manual_trigger_rejects_invalid_priority(api_client: TestClient) -> None:
    assert api_client.post("/jobs", json={"source": "sbir", "priority": 0}).status_code == 422
    assert api_client.post("/jobs", json={"source": ""}).status_code == 422


def test_job_detail_includes_events(api_client: TestClient) -> None:
    response = api_client.get(f"/jobs/{JOB_ID}")

    assert response.status_code == 200
    assert response.json()["events"][0]["event_type"] == "enqueued"
    assert api_client.get("/jobs/44444444-4444-4444-4444-444444444444").status_code == 404


def test_cancel_job_then_conflict(api_client: TestClient) -> None:
    first = api_client.post(f"/jobs/{JOB_ID}/cancel", json={"actor": "ops@example.test"})
    second = api_client.post(f"/jobs/{JOB_ID}/cancel")

    assert first.status_code == 200
    assert first.json()["status"] == "cancelled"
    assert second.status_code == 409


def test_schedules_listing_and_tick(api_client: TestClient, fake_repo: FakeAdminRepository) -> None:
    schedules = api_client.get("/schedules").json()
    tick = api_client.post("/schedules/tick")

    assert schedules[0]["source"] == "sam_gov"
    assert tick.status_code == 200
    assert tick.json() == {"count": 1, "job_ids": ["33333333-3333-3333-3333-333333333333"]}
    assert fake_repo.enqueued[-1] == {"max_attempts": 5}
