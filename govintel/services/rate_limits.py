from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone


@dataclass(slots=True)
class RateLimitState:
    source: str
    requests_today: int
    requests_this_hour: int
    daily_limit: int | None
    hourly_limit: int | None
    daily_window_start: date
    hourly_window_start: datetime
    last_request_at: datetime | None = None
    last_reset_at: datetime | None = None


@dataclass(slots=True)
class QuotaDecision:
    source: str
    can_proceed: bool
    daily_remaining: int | None
    hourly_remaining: int | None
    retry_at: datetime | None = None


def hour_start(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def roll_windows(state: RateLimitState, *, now: datetime) -> RateLimitState:
    today = now.astimezone(timezone.utc).date()
    current_hour = hour_start(now)
    rolled = state
    if rolled.daily_window_start != today:
        rolled = replace(rolled, requests_today=0, daily_window_start=today, last_reset_at=now)
    if hour_start(rolled.hourly_window_start) != current_hour:
        rolled = replace(rolled, requests_this_hour=0, hourly_window_start=current_hour, last_reset_at=now)
    return rolled


def evaluate_quota(state: RateLimitState, *, now: datetime) -> QuotaDecision:
    daily_remaining = None if state.daily_limit is None else max(0, state.daily_limit - state.requests_today)
    hourly_remaining = None if state.hourly_limit is None else max(0, state.hourly_limit - state.requests_this_hour)
    daily_ok = daily_remaining is None or daily_remaining > 0
    hourly_ok = hourly_remaining is None or hourly_remaining > 0
    retry_at: datetime | None = None
    if not daily_ok:
        retry_at = next_day_start(now)
    elif not hourly_ok:
        retry_at = hour_start(now) + timedelta(hours=1)
    return QuotaDecision(
        source=state.source,
        can_proceed=daily_ok and hourly_ok,
        daily_remaining=daily_remaining,
        hourly_remaining=hourly_remaining,
        retry_at=retry_at,
    )


def check_and_increment(state: RateLimitState, *, now: datetime) -> tuple[RateLimitState, QuotaDecision]:
    rolled = roll_windows(state, now=now)
    decision = evaluate_quota(rolled, now=now)
    if not decision.can_proceed:
        return rolled, decision

    updated = replace(
        rolled,
        requests_today=rolled.requests_today + 1,
        requests_this_hour=rolled.requests_this_hour + 1,
        last_request_at=now,
    )
    return updated, replace(
        decision,
        daily_remaining=None if decision.daily_remaining is None else decision.daily_remaining - 1,
        hourly_remaining=None if decision.hourly_remaining is None else decision.hourly_remaining - 1,
    )


def next_day_start(now: datetime) -> datetime:
    current = now.astimezone(timezone.utc)
    return datetime(current.year, current.month, current.day, tzinfo=timezone.utc) + timedelta(days=1)


def summarize_usage(states: list[RateLimitState], *, now: datetime) -> dict[str, dict[str, int | None]]:
    """Per-source usage for read-only views; stale windows read as zero without a write."""
    usage: dict[str, dict[str, int | None]] = {}
    for state in states:
        rolled = roll_windows(state, now=now)
        usage[rolled.source] = {
            "daily_used": rolled.requests_today,
            "daily_limit": rolled.daily_limit,
            "hourly_used": rolled.requests_this_hour,
            "hourly_limit": rolled.hourly_limit,
        }
    return usage
