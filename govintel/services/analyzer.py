from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Protocol

import httpx

from govintel.core.errors import AnalysisError
from govintel.services.opportunities import Opportunity
from govintel.services.scoring import AnalysisResult, TenantProfile

RECOMMENDATIONS = {"pursue", "monitor", "pass"}


class QualitativeAnalyzer(Protocol):
    async def analyze(self, opportunity: Opportunity, profile: TenantProfile) -> AnalysisResult: ...


class HttpQualitativeAnalyzer:
    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout_seconds: float = 45.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client

    async def analyze(self, opportunity: Opportunity, profile: TenantProfile) -> AnalysisResult:
        payload = {
            "opportunity": opportunity_payload(opportunity),
            "profile": {
                "tenant_id": profile.tenant_id,
                "primary_naics": profile.primary_naics,
                "secondary_naics": profile.secondary_naics,
                "keyword_domains": profile.keyword_domains,
                "qualifications": sorted(profile.qualifications()),
                "agency_priorities": profile.agency_priorities,
            },
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.url, json=payload, headers=self.headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise AnalysisError(f"analysis request failed: {exc}") from exc
        except ValueError as exc:
            raise AnalysisError("analysis response was not valid JSON") from exc

        return parse_analysis(body)


def parse_analysis(body: Any) -> AnalysisResult:
    if not isinstance(body, dict):
        raise AnalysisError("analysis response must be an object")
    adjustment = body.get("adjustment")
    if isinstance(adjustment, bool) or not isinstance(adjustment, (int, float)):
        raise AnalysisError("analysis response is missing a numeric adjustment")
    if isinstance(adjustment, float) and not math.isfinite(adjustment):
        raise AnalysisError(f"analysis response carried a non-finite adjustment: {adjustment!r}")

    try:
        tokens_used = int(body.get("tokens_used") or 0)
        cost_usd = float(body.get("cost_usd") or 0.0)
    except (TypeError, ValueError) as exc:
        raise AnalysisError("analysis response carried malformed usage figures") from exc

    recommendation = body.get("recommendation")
    return AnalysisResult(
        adjustment=float(adjustment),
        rationale=body.get("rationale") if isinstance(body.get("rationale"), str) else None,
        key_requirements=_text_list(body.get("key_requirements")),
        competitive_risks=_text_list(body.get("competitive_risks")),
        questions_for_rfi=_text_list(body.get("questions_for_rfi")),
        recommendation=recommendation if recommendation in RECOMMENDATIONS else None,
        tokens_used=tokens_used,
        cost_usd=cost_usd,
    )


def opportunity_payload(opportunity: Opportunity) -> dict[str, Any]:
    return {
        "source": opportunity.source,
        "source_id": opportunity.source_id,
        "title": opportunity.title,
        "description": opportunity.description,
        "agency": opportunity.agency,
        "naics_codes": opportunity.naics_codes,
        "set_aside_type": opportunity.set_aside_type,
        "opportunity_type": opportunity.opportunity_type,
        "close_date": _iso(opportunity.close_date),
        "estimated_value_min": opportunity.estimated_value_min,
        "estimated_value_max": opportunity.estimated_value_max,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _text_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]
