import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from govintel.core.config import Settings
from govintel.core.errors import AnalysisError, JobCancelled, RateLimitDeferred
from govintel.jobs.context import JobContext
from govintel.jobs.ingest import execute_ingest
from govintel.services.rate_limits import QuotaDecision
from govintel.services.runtime_config import build_runtime_config
from govintel.services.scoring import AnalysisResult, TenantProfile

CLOSE_DATE = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()


class FakeConnector:
    def __init__(self, records: list[Any]) -> None:
        self.records = records
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    async def fetch(self, source: str, run_type: str, params: dict[str, Any]) -> list[Any]:
        self.calls.append((source, run_type, params))
        return list(self.records)


class FakeAnalyzer:
    def __init__(self, adjustment: float = 10.0, fail: bool = False) -> None:
        self.adjustment = adjustment
        self.fail = fail
        self.calls = 0

    async def analyze(self, opportunity, profile) -> AnalysisResult:
        self.calls += 1
        if self.fail:
            raise AnalysisError("model unavailable")
        return AnalysisResult(adjustment=self.adjustment, rationale="fit", tokens_used=500, cost_usd=0.01)


def _record(**overrides) -> dict[str, Any]:
    record = {
        "notice_id": "N-1",
        "title": "Cloud migration for legacy case management",
        "naics_codes": ["541512"],
        "agency": "Department of Labor",
        "notice_type": "Solicitation",
        "close_date": CLOSE_DATE,
        "resource_links": ["https://sam.gov/docs/rfp.pdf"],
    }
    record.update(overrides)
    return record


def _profiles() -> list[TenantProfile]:
    return [
        TenantProfile(tenant_id="tenant-a", primary_naics=["541512"], keyword_domains={"cloud": ["cloud migration"]}),
        TenantProfile(tenant_id="tenant-b", primary_naics=["236220"]),
    ]


def _context(repository, connector, *, job: dict[str, Any], analyzer=None, config_values=None) -> JobContext:
    return JobContext(
        job=job,
        worker_id="worker-1",
        repository=repository,
        config=build_runtime_config(config_values or {}, Settings(database_url=None)),
        connector=connector,
        analyzer=analyzer,
    )


def test_ingest_creates_opportunities_and_surfaces_only_matching_tenants(fake_repository, job_factory) -> None:
    fake_repository.profiles = _profiles()
    connector = FakeConnector(
        [_record(), _record(notice_id="N-2", title="Bridge resurfacing", naics_codes=[], resource_links=[])]
    )
    ctx = _context(fake_repository, connector, job=job_factory())

    asyncio.run(execute_ingest(ctx))

    assert connector.calls == [("sam_gov", "incremental", {})]
    assert ctx.stats.opportunities_fetched == 2
    assert ctx.stats.opportunities_new == 2
    assert ctx.stats.documents_queued == 1
    assert len(fake_repository.opportunities) == 2
    surfaced = {tenant_id for tenant_id, _ in fake_repository.tenant_rows}
    assert surfaced == {"tenant-a"}
    assert ctx.stats.tenants_scored == 1
    assert fake_repository.quota_calls == ["sam_gov"]


def test_unchanged_reingest_writes_no_amendments(fake_repository, job_factory) -> None:
    fake_repository.profiles = _profiles()
    connector = FakeConnector([_record()])

    asyncio.run(execute_ingest(_context(fake_repository, connector, job=job_factory())))
    opportunity = fake_repository.opportunities[("sam_gov", "N-1")]
    first_updated_at = opportunity.updated_at

    ctx = _context(fake_repository, connector, job=job_factory())
    asyncio.run(execute_ingest(ctx))

    assert ctx.stats.opportunities_unchanged == 1
    assert ctx.stats.amendments_detected == 0
    assert fake_repository.amendments == []
    assert fake_repository.opportunities[("sam_gov", "N-1")].updated_at == first_updated_at
    assert ctx.stats.tenants_scored == 0


def test_unchanged_record_is_scored_for_new_tenants_only(fake_repository, job_factory) -> None:
    fake_repository.profiles = _profiles()[:1]
    connector = FakeConnector([_record()])
    asyncio.run(execute_ingest(_context(fake_repository, connector, job=job_factory())))

    fake_repository.profiles = [
        *_profiles()[:1],
        TenantProfile(tenant_id="tenant-c", primary_naics=["541512"]),
    ]
    ctx = _context(fake_repository, connector, job=job_factory())
    asyncio.run(execute_ingest(ctx))

    assert ctx.stats.tenants_scored == 1
    assert {tenant_id for tenant_id, _ in fake_repository.tenant_rows} == {"tenant-a", "tenant-c"}


def test_changed_watched_field_yields_one_amendment_and_rescores(fake_repository, job_factory) -> None:
    fake_repository.profiles = _profiles()
    asyncio.run(execute_ingest(_context(fake_repository, FakeConnector([_record()]), job=job_factory())))

    new_close = (datetime.now(timezone.utc) + timedelta(days=45)).isoformat()
    ctx = _context(fake_repository, FakeConnector([_record(close_date=new_close)]), job=job_factory())
    asyncio.run(execute_ingest(ctx))

    assert len(fake_repository.opportunities) == 1
    assert ctx.stats.opportunities_updated == 1
    assert ctx.stats.amendments_detected == 1
    assert [row["change_type"] for row in fake_repository.amendments] == ["close_date"]
    assert ctx.stats.tenants_scored == 1


def test_invalid_records_are_isolated(fake_repository, job_factory) -> None:
    connector = FakeConnector([{"title": "no id"}, "not a dict", _record()])
    ctx = _context(fake_repository, connector, job=job_factory())

    asyncio.run(execute_ingest(ctx))

    assert ctx.stats.opportunities_new == 1
    assert ctx.stats.error_count == 2
    assert {error["stage"] for error in ctx.stats.errors} == {"normalize"}


def test_out_of_range_values_do_not_abort_the_batch(fake_repository, job_factory) -> None:
    connector = FakeConnector(
        [
            _record(notice_id="BAD-DATE", posted_date="0001-01-01T00:00:00+05:00"),
            _record(notice_id="BAD-VALUE", estimated_value="inf"),
            _record(notice_id="GOOD"),
        ]
    )
    ctx = _context(fake_repository, connector, job=job_factory())

    asyncio.run(execute_ingest(ctx))

    assert list(fake_repository.opportunities) == [("sam_gov", "GOOD")]
    assert [(error["stage"], error["source_id"]) for error in ctx.stats.errors] == [
        ("normalize", "BAD-DATE"),
        ("normalize", "BAD-VALUE"),
    ]


def test_unexpected_record_failure_is_recorded_and_batch_continues(fake_repository, job_factory) -> None:
    upsert = fake_repository.upsert_opportunity

    async def flaky_upsert(opportunity):
        if opportunity.source_id == "BROKEN":
            raise ArithmeticError("cannot encode value")
        return await upsert(opportunity)

    fake_repository.upsert_opportunity = flaky_upsert
    connector = FakeConnector([_record(notice_id="BROKEN"), _record(notice_id="GOOD")])
    ctx = _context(fake_repository, connector, job=job_factory())

    asyncio.run(execute_ingest(ctx))

    assert ctx.stats.opportunities_new == 1
    assert ctx.stats.errors == [
        {"stage": "ingest", "message": "ArithmeticError: cannot encode value", "source_id": "BROKEN"}
    ]


def test_job_errors_raised_inside_a_record_still_stop_the_job(fake_repository, job_factory) -> None:
    async def cancelled_upsert(opportunity):
        raise JobCancelled("cancelled mid-record")

    fake_repository.upsert_opportunity = cancelled_upsert
    ctx = _context(fake_repository, FakeConnector([_record()]), job=job_factory())

    with pytest.raises(JobCancelled):
        asyncio.run(execute_ingest(ctx))


def test_document_queueing_respects_feature_flag(fake_repository, job_factory) -> None:
    ctx = _context(
        fake_repository,
        FakeConnector([_record()]),
        job=job_factory(),
        config_values={"features.document_download": False},
    )

    asyncio.run(execute_ingest(ctx))

    assert ctx.stats.documents_queued == 0
    assert fake_repository.documents == set()


def test_exhausted_quota_defers_before_fetching(fake_repository, job_factory) -> None:
    retry_at = datetime(2026, 3, 3, tzinfo=timezone.utc)
    fake_repository.quota["sam_gov"] = QuotaDecision(
        source="sam_gov", can_proceed=False, daily_remaining=0, hourly_remaining=None, retry_at=retry_at
    )
    connector = FakeConnector([_record()])

    with pytest.raises(RateLimitDeferred) as exc_info:
        asyncio.run(execute_ingest(_context(fake_repository, connector, job=job_factory())))

    assert exc_info.value.retry_at == retry_at
    assert connector.calls == []


def test_cancellation_stops_between_records(fake_repository, job_factory) -> None:
    fake_repository.lease_lost_after = 1
    connector = FakeConnector([_record(), _record(notice_id="N-2")])
    ctx = _context(fake_repository, connector, job=job_factory())

    with pytest.raises(JobCancelled):
        asyncio.run(execute_ingest(ctx))

    assert list(fake_repository.opportunities) == [("sam_gov", "N-1")]


def test_analyzer_adjusts_high_scores_and_tracks_usage(fake_repository, job_factory) -> None:
    fake_repository.profiles = _profiles()[:1]
    analyzer = FakeAnalyzer(adjustment=30.0)
    ctx = _context(fake_repository, FakeConnector([_record()]), job=job_factory(), analyzer=analyzer)

    asyncio.run(execute_ingest(ctx))

    breakdown = next(iter(fake_repository.tenant_rows.values()))
    assert analyzer.calls == 1
    assert breakdown.llm_adjustment == 20.0
    assert breakdown.total_score == min(100.0, breakdown.base_score + 20.0)
    assert ctx.stats.llm_calls_made == 1
    assert ctx.stats.llm_tokens_used == 500
    assert fake_repository.quota_calls == ["sam_gov", "anthropic"]


def test_analyzer_skipped_when_quota_exhausted_or_disabled(fake_repository, job_factory) -> None:
    fake_repository.profiles = _profiles()[:1]
    fake_repository.quota["anthropic"] = QuotaDecision(
        source="anthropic", can_proceed=False, daily_remaining=0, hourly_remaining=None
    )
    analyzer = FakeAnalyzer()
    ctx = _context(fake_repository, FakeConnector([_record()]), job=job_factory(), analyzer=analyzer)
    asyncio.run(execute_ingest(ctx))

    assert analyzer.calls == 0
    assert ctx.stats.analysis_skipped == 1

    disabled = _context(
        fake_repository,
        FakeConnector([_record(notice_id="N-9")]),
        job=job_factory(),
        analyzer=analyzer,
        config_values={"features.llm_analysis": False},
    )
    asyncio.run(execute_ingest(disabled))
    assert analyzer.calls == 0


def test_analyzer_failure_leaves_score_unadjusted(fake_repository, job_factory) -> None:
    fake_repository.profiles = _profiles()[:1]
    ctx = _context(fake_repository, FakeConnector([_record()]), job=job_factory(), analyzer=FakeAnalyzer(fail=True))

    asyncio.run(execute_ingest(ctx))

    breakdown = next(iter(fake_repository.tenant_rows.values()))
    assert breakdown.llm_adjustment == 0.0
    assert breakdown.total_score == breakdown.base_score
    assert ctx.stats.errors[0]["stage"] == "analysis"
