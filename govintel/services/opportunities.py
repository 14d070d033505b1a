from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from govintel.core.errors import RecordValidationError

OPPORTUNITY_STATUSES = {"active", "closed", "awarded", "cancelled"}
WATCHED_FIELDS = (
    "title",
    "description",
    "close_date",
    "set_aside_type",
    "naics_codes",
    "estimated_value_min",
    "estimated_value_max",
    "opportunity_type",
    "status",
    "document_urls",
)
HASHED_FIELDS = (
    "title",
    "description",
    "agency",
    "agency_code",
    "naics_codes",
    "set_aside_type",
    "set_aside_code",
    "opportunity_type",
    "posted_date",
    "close_date",
    "estimated_value_min",
    "estimated_value_max",
    "solicitation_number",
    "contract_number",
    "source_url",
    "document_urls",
    "status",
)

_STATUS_ALIASES = {
    "open": "active",
    "active": "active",
    "posted": "active",
    "forecasted": "active",
    "closed": "closed",
    "archived": "closed",
    "inactive": "closed",
    "expired": "closed",
    "award": "awarded",
    "awarded": "awarded",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}
_NAICS_SPLIT_RE = re.compile(r"[\s,;|]+")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%Y%m%d")


@dataclass(slots=True)
class Opportunity:
    source: str
    source_id: str
    title: str
    description: str | None = None
    agency: str | None = None
    agency_code: str | None = None
    naics_codes: list[str] = field(default_factory=list)
    set_aside_type: str | None = None
    set_aside_code: str | None = None
    opportunity_type: str | None = None
    posted_date: datetime | None = None
    close_date: datetime | None = None
    estimated_value_min: float | None = None
    estimated_value_max: float | None = None
    solicitation_number: str | None = None
    contract_number: str | None = None
    source_url: str | None = None
    document_urls: list[str] = field(default_factory=list)
    status: str = "active"
    raw_data: dict[str, Any] = field(default_factory=dict)
    content_hash: str = ""
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class FieldChange:
    change_type: str
    old_value: str | None
    new_value: str | None


def normalize_record(source: str, raw: dict[str, Any]) -> Opportunity:
    if not isinstance(raw, dict):
        raise RecordValidationError("raw record must be an object")

    source_id = _text(_first(raw, "source_id", "id", "notice_id", "noticeId", "opportunity_id"))
    if not source_id:
        raise RecordValidationError("raw record is missing a source identifier")
    title = _text(raw.get("title"))
    if not title:
        raise RecordValidationError(f"record {source_id} is missing a title")

    value_min = _money(_first(raw, "estimated_value_min", "award_floor", "value_min"), source_id)
    value_max = _money(_first(raw, "estimated_value_max", "award_ceiling", "value_max"), source_id)
    single_value = _money(raw.get("estimated_value"), source_id)
    if single_value is not None:
        value_min = value_min if value_min is not None else single_value
        value_max = value_max if value_max is not None else single_value
    if value_min is not None and value_max is not None and value_min > value_max:
        raise RecordValidationError(f"record {source_id} has estimated_value_min above estimated_value_max")

    opportunity = Opportunity(
        source=source,
        source_id=source_id,
        title=title,
        description=_text(_first(raw, "description", "summary")),
        agency=_text(_first(raw, "agency", "department", "agency_name")),
        agency_code=_text(raw.get("agency_code")),
        naics_codes=_naics(_first(raw, "naics_codes", "naics", "naics_code")),
        set_aside_type=_text(_first(raw, "set_aside_type", "set_aside", "type_of_set_aside_description")),
        set_aside_code=_text(_first(raw, "set_aside_code", "type_of_set_aside")),
        opportunity_type=_text(_first(raw, "opportunity_type", "notice_type", "type")),
        posted_date=_timestamp(_first(raw, "posted_date", "posted_at", "publish_date"), source_id),
        close_date=_timestamp(_first(raw, "close_date", "response_deadline", "due_date", "deadline"), source_id),
        estimated_value_min=value_min,
        estimated_value_max=value_max,
        solicitation_number=_text(raw.get("solicitation_number")),
        contract_number=_text(raw.get("contract_number")),
        source_url=_text(_first(raw, "source_url", "url", "ui_link")),
        document_urls=_document_urls(_first(raw, "document_urls", "resource_links", "attachments")),
        status=_status(raw.get("status"), source_id),
        raw_data=raw,
    )
    opportunity.content_hash = compute_content_hash(opportunity)
    return opportunity


def compute_content_hash(opportunity: Opportunity) -> str:
    payload = {name: _hash_value(getattr(opportunity, name)) for name in HASHED_FIELDS}
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def diff_watched_fields(previous: Opportunity, current: Opportunity) -> list[FieldChange]:
    changes: list[FieldChange] = []
    for name in WATCHED_FIELDS:
        old_value = render_field_value(getattr(previous, name))
        new_value = render_field_value(getattr(current, name))
        if old_value != new_value:
            changes.append(FieldChange(change_type=name, old_value=old_value, new_value=new_value))
    return changes


def render_field_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        return ", ".join(str(item) for item in value) if value else None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, float):
        return f"{value:.2f}"
    text = str(value)
    return text or None


def days_until_close(opportunity: Opportunity, *, now: datetime) -> float | None:
    if opportunity.close_date is None:
        return None
    return (opportunity.close_date - now).total_seconds() / 86400.0


def _hash_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, float):
        return round(value, 2)
    return value


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _naics(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, list) else _NAICS_SPLIT_RE.split(str(value))
    codes: list[str] = []
    for item in items:
        code = str(item).strip()
        if code and code not in codes:
            codes.append(code)
    return codes


def _document_urls(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    urls: list[str] = []
    for item in value:
        url = item.get("url") if isinstance(item, dict) else item
        if isinstance(url, str) and url.strip() and url.strip() not in urls:
            urls.append(url.strip())
    return urls


def _money(value: Any, source_id: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").strip()
        if not value:
            return None
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise RecordValidationError(f"record {source_id} has a non-numeric value: {value!r}") from exc
    if not math.isfinite(amount):
        raise RecordValidationError(f"record {source_id} has a non-finite value: {value!r}")
    return amount


def _timestamp(value: Any, source_id: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = _parse_timestamp_text(value.strip(), source_id)
    else:
        raise RecordValidationError(f"record {source_id} has an invalid timestamp: {value!r}")

    try:
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError) as exc:
        raise RecordValidationError(f"record {source_id} has an out-of-range timestamp: {value!r}") from exc


def _parse_timestamp_text(raw: str, source_id: str) -> datetime:
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        pass
    for pattern in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, pattern)
        except ValueError:
            continue
    raise RecordValidationError(f"record {source_id} has an invalid timestamp: {raw!r}")


def _status(value: Any, source_id: str) -> str:
    text = _text(value)
    if text is None:
        return "active"
    normalized = _STATUS_ALIASES.get(text.lower())
    if normalized is None:
        raise RecordValidationError(f"record {source_id} has an unknown status: {text!r}")
    return normalized
