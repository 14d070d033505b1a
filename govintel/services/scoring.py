from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Literal

from govintel.services.opportunities import Opportunity, days_until_close

PriorityTier = Literal["high", "medium", "low"]
Recommendation = Literal["pursue", "monitor", "pass"]

SCORE_FLOOR = 0.0
SCORE_CEILING = 100.0
HIGH_PRIORITY_THRESHOLD = 75.0
MEDIUM_PRIORITY_THRESHOLD = 50.0

_SET_ASIDE_CODES = {
    "SBA": "small_business",
    "SBP": "small_business",
    "8A": "8a",
    "8AN": "8a",
    "HZC": "hubzone",
    "HZS": "hubzone",
    "SDVOSBC": "sdvosb",
    "SDVOSBS": "sdvosb",
    "WOSB": "wosb",
    "WOSBSS": "wosb",
    "EDWOSB": "wosb",
    "EDWOSBSS": "wosb",
    "VSA": "veteran",
    "VSS": "veteran",
}
# Ordered: the first matching marker wins.
_SET_ASIDE_MARKERS = (
    ("service-disabled", "sdvosb"),
    ("service disabled", "sdvosb"),
    ("sdvosb", "sdvosb"),
    ("women-owned", "wosb"),
    ("women owned", "wosb"),
    ("wosb", "wosb"),
    ("hubzone", "hubzone"),
    ("hub zone", "hubzone"),
    ("8(a)", "8a"),
    ("veteran", "veteran"),
    ("small business", "small_business"),
)
_OPEN_COMPETITION_MARKERS = {"none", "n/a", "na", "full and open", "unrestricted", "no set aside used"}


@dataclass(slots=True)
class TenantProfile:
    tenant_id: str
    primary_naics: list[str] = field(default_factory=list)
    secondary_naics: list[str] = field(default_factory=list)
    keyword_domains: dict[str, list[str]] = field(default_factory=dict)
    is_small_business: bool = True
    is_sdvosb: bool = False
    is_wosb: bool = False
    is_hubzone: bool = False
    is_8a: bool = False
    agency_priorities: dict[str, int] = field(default_factory=dict)
    min_contract_value: float | None = None
    max_contract_value: float | None = None
    min_surface_score: float = 40.0
    high_priority_score: float = HIGH_PRIORITY_THRESHOLD
    tenant_name: str | None = None

    def qualifications(self) -> set[str]:
        qualified: set[str] = set()
        if self.is_small_business:
            qualified.add("small_business")
        if self.is_sdvosb:
            qualified.update({"sdvosb", "veteran"})
        if self.is_wosb:
            qualified.add("wosb")
        if self.is_hubzone:
            qualified.add("hubzone")
        if self.is_8a:
            qualified.add("8a")
        return qualified


@dataclass(slots=True)
class ScoringRules:
    naics_primary_points: float = 30.0
    naics_secondary_points: float = 18.0
    naics_prefix_points: float = 8.0
    keyword_domain_points: float = 6.0
    keyword_match_points: float = 2.0
    keyword_max_points: float = 25.0
    set_aside_open_points: float = 5.0
    set_aside_match_points: float = 15.0
    set_aside_mismatch_points: float = -25.0
    agency_tier_points: dict[str, float] = field(default_factory=lambda: {"1": 15.0, "2": 10.0, "3": 5.0})
    type_points: dict[str, float] = field(
        default_factory=lambda: {
            "solicitation": 10.0,
            "combined synopsis/solicitation": 10.0,
            "presolicitation": 7.0,
            "sources sought": 5.0,
            "special notice": 2.0,
            "award notice": 0.0,
        }
    )
    type_default_points: float = 3.0
    timeline_unknown_points: float = 3.0
    timeline_urgent_points: float = 2.0
    timeline_soon_points: float = 5.0
    timeline_ideal_points: float = 10.0
    timeline_distant_points: float = 7.0
    timeline_urgent_days: float = 7.0
    timeline_soon_days: float = 14.0
    timeline_ideal_days: float = 60.0

    @classmethod
    def from_overrides(cls, overrides: dict[str, Any] | None) -> "ScoringRules":
        rules = cls()
        if not isinstance(overrides, dict):
            return rules
        known = {item.name for item in fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                continue
            current = getattr(rules, key)
            if isinstance(current, dict):
                if isinstance(value, dict):
                    merged = dict(current)
                    merged.update({str(k).lower(): float(v) for k, v in value.items() if _is_number(v)})
                    setattr(rules, key, merged)
            elif _is_number(value):
                setattr(rules, key, float(value))
        return rules


@dataclass(slots=True)
class AnalysisResult:
    adjustment: float
    rationale: str | None = None
    key_requirements: list[str] = field(default_factory=list)
    competitive_risks: list[str] = field(default_factory=list)
    questions_for_rfi: list[str] = field(default_factory=list)
    recommendation: Recommendation | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0


@dataclass(slots=True)
class ScoreBreakdown:
    naics_score: float
    keyword_score: float
    set_aside_score: float
    agency_score: float
    type_score: float
    timeline_score: float
    base_score: float
    total_score: float
    matched_keywords: list[str] = field(default_factory=list)
    matched_domains: list[str] = field(default_factory=list)
    llm_adjustment: float = 0.0
    llm_rationale: str | None = None
    pursuit_recommendation: Recommendation | None = None
    key_requirements: list[str] = field(default_factory=list)
    competitive_risks: list[str] = field(default_factory=list)
    questions_for_rfi: list[str] = field(default_factory=list)

    @property
    def priority_tier(self) -> PriorityTier:
        return priority_tier_for(self.total_score)


def clamp_score(value: float) -> float:
    return round(min(SCORE_CEILING, max(SCORE_FLOOR, value)), 1)


def priority_tier_for(total_score: float) -> PriorityTier:
    if total_score >= HIGH_PRIORITY_THRESHOLD:
        return "high"
    if total_score >= MEDIUM_PRIORITY_THRESHOLD:
        return "medium"
    return "low"


def score_opportunity(
    opportunity: Opportunity,
    profile: TenantProfile,
    *,
    rules: ScoringRules,
    now: datetime,
) -> ScoreBreakdown:
    keyword_score, matched_keywords, matched_domains = score_keywords(opportunity, profile, rules)
    sub_scores = {
        "naics_score": score_naics(opportunity, profile, rules),
        "keyword_score": keyword_score,
        "set_aside_score": score_set_aside(opportunity, profile, rules),
        "agency_score": score_agency(opportunity, profile, rules),
        "type_score": score_type(opportunity, rules),
        "timeline_score": score_timeline(opportunity, rules, now=now),
    }
    base_score = clamp_score(sum(sub_scores.values()))
    return ScoreBreakdown(
        **sub_scores,
        base_score=base_score,
        total_score=base_score,
        matched_keywords=matched_keywords,
        matched_domains=matched_domains,
    )


def needs_qualitative_review(breakdown: ScoreBreakdown, *, trigger_score: float) -> bool:
    return breakdown.base_score > trigger_score


def apply_qualitative_adjustment(
    breakdown: ScoreBreakdown,
    analysis: AnalysisResult,
    *,
    max_adjustment: float,
) -> ScoreBreakdown:
    bound = abs(max_adjustment)
    adjustment = round(min(bound, max(-bound, analysis.adjustment)), 1)
    return replace(
        breakdown,
        llm_adjustment=adjustment,
        total_score=clamp_score(breakdown.base_score + adjustment),
        llm_rationale=analysis.rationale,
        pursuit_recommendation=analysis.recommendation,
        key_requirements=list(analysis.key_requirements),
        competitive_risks=list(analysis.competitive_risks),
        questions_for_rfi=list(analysis.questions_for_rfi),
    )


def should_surface(breakdown: ScoreBreakdown, opportunity: Opportunity, profile: TenantProfile) -> bool:
    if breakdown.total_score < profile.min_surface_score:
        return False
    return within_value_bounds(opportunity, profile)


def within_value_bounds(opportunity: Opportunity, profile: TenantProfile) -> bool:
    low = opportunity.estimated_value_min
    high = opportunity.estimated_value_max
    if low is None and high is None:
        return True
    low = low if low is not None else high
    high = high if high is not None else low
    if profile.max_contract_value is not None and low is not None and low > profile.max_contract_value:
        return False
    if profile.min_contract_value is not None and high is not None and high < profile.min_contract_value:
        return False
    return True


def score_naics(opportunity: Opportunity, profile: TenantProfile, rules: ScoringRules) -> float:
    codes = set(opportunity.naics_codes)
    if not codes:
        return 0.0
    if codes & set(profile.primary_naics):
        return rules.naics_primary_points
    if codes & set(profile.secondary_naics):
        return rules.naics_secondary_points
    profile_prefixes = {code[:4] for code in [*profile.primary_naics, *profile.secondary_naics] if len(code) >= 4}
    if any(code[:4] in profile_prefixes for code in codes if len(code) >= 4):
        return rules.naics_prefix_points
    return 0.0


def score_keywords(
    opportunity: Opportunity,
    profile: TenantProfile,
    rules: ScoringRules,
) -> tuple[float, list[str], list[str]]:
    text = f"{opportunity.title} {opportunity.description or ''}".lower()
    matched_keywords: list[str] = []
    matched_domains: list[str] = []
    for domain, keywords in sorted(profile.keyword_domains.items()):
        domain_hits = [keyword for keyword in keywords if _keyword_in_text(keyword, text)]
        if not domain_hits:
            continue
        matched_domains.append(domain)
        for keyword in domain_hits:
            if keyword not in matched_keywords:
                matched_keywords.append(keyword)

    points = len(matched_domains) * rules.keyword_domain_points + len(matched_keywords) * rules.keyword_match_points
    return min(points, rules.keyword_max_points), matched_keywords, matched_domains


def classify_set_aside(set_aside_type: str | None, set_aside_code: str | None) -> str | None:
    if set_aside_code:
        category = _SET_ASIDE_CODES.get(set_aside_code.strip().upper())
        if category:
            return category
    if not set_aside_type:
        return None
    lowered = set_aside_type.strip().lower()
    if not lowered or lowered in _OPEN_COMPETITION_MARKERS:
        return None
    if lowered.upper() in _SET_ASIDE_CODES:
        return _SET_ASIDE_CODES[lowered.upper()]
    for marker, category in _SET_ASIDE_MARKERS:
        if marker in lowered:
            return category
    return None


def score_set_aside(opportunity: Opportunity, profile: TenantProfile, rules: ScoringRules) -> float:
    category = classify_set_aside(opportunity.set_aside_type, opportunity.set_aside_code)
    if category is None:
        return rules.set_aside_open_points
    if category in profile.qualifications():
        return rules.set_aside_match_points
    return rules.set_aside_mismatch_points


def score_agency(opportunity: Opportunity, profile: TenantProfile, rules: ScoringRules) -> float:
    if not profile.agency_priorities:
        return 0.0
    priorities = {key.strip().lower(): tier for key, tier in profile.agency_priorities.items()}
    tier: int | None = None
    for candidate in (opportunity.agency_code, opportunity.agency):
        if candidate and candidate.strip().lower() in priorities:
            tier = priorities[candidate.strip().lower()]
            break
    if tier is None:
        return 0.0
    return rules.agency_tier_points.get(str(tier), 0.0)


def score_type(opportunity: Opportunity, rules: ScoringRules) -> float:
    if not opportunity.opportunity_type:
        return rules.type_default_points
    return rules.type_points.get(opportunity.opportunity_type.strip().lower(), rules.type_default_points)


def score_timeline(opportunity: Opportunity, rules: ScoringRules, *, now: datetime) -> float:
    days = days_until_close(opportunity, now=now)
    if days is None:
        return rules.timeline_unknown_points
    if days < 0:
        return 0.0
    if days < rules.timeline_urgent_days:
        return rules.timeline_urgent_points
    if days < rules.timeline_soon_days:
        return rules.timeline_soon_points
    if days <= rules.timeline_ideal_days:
        return rules.timeline_ideal_points
    return rules.timeline_distant_points


def _keyword_in_text(keyword: str, text: str) -> bool:
    needle = keyword.strip().lower()
    if not needle:
        return False
    return re.search(rf"\b{re.escape(needle)}\b", text) is not None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
