from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from govintel.core.config import Settings
from govintel.services.scoring import HIGH_PRIORITY_THRESHOLD, ScoringRules


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    """Snapshot of `system_config` taken once per job and passed explicitly."""

    version: str
    llm_trigger_score: float
    llm_max_adjustment: float
    max_attempts: int
    llm_analysis_enabled: bool
    document_download_enabled: bool
    digest_min_score: float
    scoring_rules: ScoringRules


def build_runtime_config(values: dict[str, Any], settings: Settings) -> RuntimeConfig:
    encoded = json.dumps(values, sort_keys=True, default=str, separators=(",", ":"))
    return RuntimeConfig(
        version=hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:12],
        llm_trigger_score=_as_float(values.get("scoring.llm_trigger_score"), default=settings.llm_trigger_score),
        llm_max_adjustment=abs(
            _as_float(values.get("scoring.llm_max_adjustment"), default=settings.llm_max_adjustment)
        ),
        max_attempts=max(1, _as_int(values.get("pipeline.retry_attempts"), default=settings.job_max_attempts)),
        llm_analysis_enabled=_as_bool(values.get("features.llm_analysis"), default=True),
        document_download_enabled=_as_bool(values.get("features.document_download"), default=True),
        digest_min_score=_as_float(values.get("notifications.digest_min_score"), default=HIGH_PRIORITY_THRESHOLD),
        scoring_rules=ScoringRules.from_overrides(values.get("scoring.rules")),
    )


def _as_float(value: Any, *, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


async def load_runtime_config(repository: Any, settings: Settings) -> RuntimeConfig:
    return build_runtime_config(await repository.load_runtime_config_values(), settings)
