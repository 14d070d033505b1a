from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

MAX_RECORDED_ERRORS = 200


@dataclass(slots=True)
class RunStats:
    opportunities_fetched: int = 0
    opportunities_new: int = 0
    opportunities_updated: int = 0
    opportunities_unchanged: int = 0
    tenants_scored: int = 0
    amendments_detected: int = 0
    documents_queued: int = 0
    notifications_queued: int = 0
    llm_calls_made: int = 0
    llm_tokens_used: int = 0
    llm_cost_usd: float = 0.0
    analysis_skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    error_count: int = 0

    def record_error(self, *, stage: str, message: str, source_id: str | None = None) -> None:
        self.error_count += 1
        if len(self.errors) >= MAX_RECORDED_ERRORS:
            return
        entry: dict[str, Any] = {"stage": stage, "message": message}
        if source_id is not None:
            entry["source_id"] = source_id
        self.errors.append(entry)

    def as_result(self) -> dict[str, Any]:
        result = asdict(self)
        result["llm_cost_usd"] = round(self.llm_cost_usd, 4)
        return result


@dataclass(slots=True)
class PipelineRunRecord:
    job_id: str
    source: str
    run_type: str
    status: str
    started_at: datetime
    completed_at: datetime
    stats: RunStats
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())
