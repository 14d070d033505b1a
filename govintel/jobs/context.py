from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from govintel.core.errors import JobCancelled
from govintel.services.analyzer import QualitativeAnalyzer
from govintel.services.audit import RunStats
from govintel.services.connectors import SourceConnector
from govintel.services.runtime_config import RuntimeConfig


@dataclass(slots=True)
class JobContext:
    """Everything a handler needs to execute one leased job."""

    job: dict[str, Any]
    worker_id: str
    repository: Any
    config: RuntimeConfig
    connector: SourceConnector
    analyzer: QualitativeAnalyzer | None = None
    analyzer_rate_limit_source: str = "anthropic"
    stats: RunStats = field(default_factory=RunStats)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def job_id(self) -> str:
        return str(self.job["id"])

    @property
    def source(self) -> str:
        return str(self.job["source"])

    @property
    def run_type(self) -> str:
        return str(self.job["run_type"])

    @property
    def parameters(self) -> dict[str, Any]:
        parameters = self.job.get("parameters")
        return parameters if isinstance(parameters, dict) else {}

    async def checkpoint(self) -> None:
        if not await self.repository.is_lease_held(self.job_id, self.worker_id):
            raise JobCancelled(f"job {self.job_id} is no longer leased by {self.worker_id}")
