from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from govintel.core.config import Settings
from govintel.services.audit import PipelineRunRecord
from govintel.services.opportunities import Opportunity, diff_watched_fields
from govintel.services.rate_limits import QuotaDecision
from govintel.services.repository import FailureTransition, UpsertOutcome
from govintel.services.scoring import ScoreBreakdown, TenantProfile


class FakeControlPlaneRepository:
    """In-memory stand-in for PostgresRepository used by job and worker tests."""

    def __init__(self) -> None:
        self.opportunities: dict[tuple[str, str], Opportunity] = {}
        self.amendments: list[dict[str, Any]] = []
        self.tenant_rows: dict[tuple[str, str], ScoreBreakdown] = {}
        self.documents: set[tuple[str, str]] = set()
        self.profiles: list[TenantProfile] = []
        self.config_values: dict[str, Any] = {}
        self.quota: dict[str, QuotaDecision] = {}
        self.quota_calls: list[str] = []
        self.lease_checks = 0
        self.lease_lost_after: int | None = None
        self.completed: list[tuple[str, str, dict[str, Any]]] = []
        self.failed: list[dict[str, Any]] = []
        self.deferred: list[dict[str, Any]] = []
        self.runs: list[PipelineRunRecord] = []
        self.health_updates: list[dict[str, Any]] = []
        self.recipients: list[dict[str, Any]] = []
        self.digest_rows: dict[str, list[dict[str, Any]]] = {}
        self.notifications: list[dict[str, Any]] = []
        self.marked_amendments: list[str] = []
        self.complete_result = True
        self._next_id = 0

    def _new_id(self) -> str:
        self._next_id += 1
        return f"00000000-0000-0000-0000-{self._next_id:012d}"

    async def is_lease_held(self, job_id: str, worker_id: str) -> bool:
        self.lease_checks += 1
        return self.lease_lost_after is None or self.lease_checks <= self.lease_lost_after

    async def acquire_quota(self, source: str, *, now: datetime | None = None) -> QuotaDecision:
        self.quota_calls.append(source)
        return self.quota.get(
            source,
            QuotaDecision(source=source, can_proceed=True, daily_remaining=None, hourly_remaining=None),
        )

    async def list_eligible_tenant_profiles(self) -> list[TenantProfile]:
        return list(self.profiles)

    async def upsert_opportunity(self, opportunity: Opportunity) -> UpsertOutcome:
        key = (opportunity.source, opportunity.source_id)
        existing = self.opportunities.get(key)
        now = datetime.now(timezone.utc)
        if existing is None:
            opportunity.id = self._new_id()
            opportunity.created_at = now
            opportunity.updated_at = now
            self.opportunities[key] = opportunity
            return UpsertOutcome(opportunity=opportunity, created=True, changed=False, amendments=[])
        if existing.content_hash == opportunity.content_hash:
            return UpsertOutcome(opportunity=existing, created=False, changed=False, amendments=[])

        changes = diff_watched_fields(existing, opportunity)
        for change in changes:
            self.amendments.append(
                {
                    "id": self._new_id(),
                    "opportunity_id": existing.id,
                    "change_type": change.change_type,
                    "old_value": change.old_value,
                    "new_value": change.new_value,
                }
            )
        opportunity.id = existing.id
        opportunity.created_at = existing.created_at
        opportunity.updated_at = now
        self.opportunities[key] = opportunity
        return UpsertOutcome(opportunity=opportunity, created=False, changed=True, amendments=changes)

    async def list_scored_tenant_ids(self, opportunity_id: str) -> set[str]:
        return {tenant_id for tenant_id, opp_id in self.tenant_rows if opp_id == opportunity_id}

    async def upsert_tenant_opportunity(
        self,
        *,
        tenant_id: str,
        opportunity_id: str,
        breakdown: ScoreBreakdown,
        create: bool,
    ) -> str:
        key = (tenant_id, opportunity_id)
        if key in self.tenant_rows:
            self.tenant_rows[key] = breakdown
            return "updated"
        if not create:
            return "skipped"
        self.tenant_rows[key] = breakdown
        return "created"

    async def queue_documents(self, opportunity_id: str, urls: list[str]) -> int:
        queued = 0
        for url in urls:
            if (opportunity_id, url) not in self.documents:
                self.documents.add((opportunity_id, url))
                queued += 1
        return queued

    async def list_active_opportunities(self, *, limit: int = 500, offset: int = 0) -> list[Opportunity]:
        rows = sorted(
            (opp for opp in self.opportunities.values() if opp.status == "active"),
            key=lambda opp: opp.id or "",
        )
        return rows[offset : offset + limit]

    async def load_runtime_config_values(self) -> dict[str, Any]:
        return dict(self.config_values)

    async def complete_job(self, job_id: str, worker_id: str, result: dict[str, Any]) -> bool:
        self.completed.append((job_id, worker_id, result))
        return self.complete_result

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        *,
        error_message: str,
        result: dict[str, Any] | None = None,
        retryable: bool = True,
    ) -> FailureTransition | None:
        self.failed.append(
            {"job_id": job_id, "error_message": error_message, "result": result, "retryable": retryable}
        )
        if retryable:
            return FailureTransition(status="pending", attempt=2, retry_delay_seconds=30)
        return FailureTransition(status="failed", attempt=1, retry_delay_seconds=None)

    async def defer_job(
        self,
        job_id: str,
        worker_id: str,
        *,
        retry_at: datetime,
        reason: str,
        result: dict[str, Any] | None = None,
    ) -> bool:
        self.deferred.append({"job_id": job_id, "retry_at": retry_at, "reason": reason})
        return True

    async def record_pipeline_run(self, run: PipelineRunRecord) -> str:
        self.runs.append(run)
        return self._new_id()

    async def update_source_health(
        self,
        source: str,
        *,
        run_status: str,
        error_message: str | None = None,
        fatal: bool = False,
    ) -> dict[str, Any]:
        update = {"source": source, "run_status": run_status, "error_message": error_message, "fatal": fatal}
        self.health_updates.append(update)
        return update

    async def list_digest_recipients(self) -> list[dict[str, Any]]:
        return list(self.recipients)

    async def list_digest_opportunities(
        self,
        *,
        tenant_id: str,
        since: datetime,
        min_score: float,
        limit: int = 25,
    ) -> list[dict[str, Any]]:
        rows = [row for row in self.digest_rows.get(tenant_id, []) if row["total_score"] >= min_score]
        return rows[:limit]

    async def list_unnotified_amendments(self, *, tenant_id: str) -> list[dict[str, Any]]:
        tracked = {opp_id for tenant, opp_id in self.tenant_rows if tenant == tenant_id}
        titles = {opp.id: opp.title for opp in self.opportunities.values()}
        return [
            {**row, "title": titles.get(row["opportunity_id"], "")}
            for row in self.amendments
            if row["opportunity_id"] in tracked and row["id"] not in self.marked_amendments
        ]

    async def enqueue_notification(self, **kwargs: Any) -> str:
        self.notifications.append(kwargs)
        return self._new_id()

    async def mark_amendments_notified(self, amendment_ids: list[str]) -> int:
        self.marked_amendments.extend(amendment_ids)
        return len(amendment_ids)


@pytest.fixture
def fake_repository() -> FakeControlPlaneRepository:
    return FakeControlPlaneRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url=None, otel_enabled=False, analyzer_url=None)


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def job_factory():
    return make_job


def make_job(**overrides: Any) -> dict[str, Any]:
    started = datetime.now(timezone.utc)
    job: dict[str, Any] = {
        "id": "11111111-1111-1111-1111-111111111111",
        "source": "sam_gov",
        "run_type": "incremental",
        "status": "running",
        "triggered_by": "scheduler",
        "triggered_at": started - timedelta(seconds=5),
        "available_at": started - timedelta(seconds=5),
        "started_at": started,
        "completed_at": None,
        "worker_id": "worker-1",
        "priority": 2,
        "attempt": 1,
        "max_attempts": 3,
        "timeout_seconds": 60,
        "parameters": {},
        "result": None,
        "error_message": None,
    }
    job.update(overrides)
    return job
