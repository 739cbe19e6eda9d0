"""
Business Hours — shifts a send time forward into the organization's
working window.

Only weekday + hour-range semantics are modelled. Holidays and one-off
closures are not: a Monday that happens to be a public holiday is still a
business day here.

All functions are pure; the local zone is an argument rather than the
process timezone so results are reproducible across servers.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Union
from zoneinfo import ZoneInfo

from models.schemas import FollowUpConfig

TzLike = Union[str, tzinfo]


def _zone(tz: TzLike) -> tzinfo:
    if isinstance(tz, tzinfo):
        return tz
    if tz.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(tz)


def _as_aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def weekday_index(day: Union[date, datetime]) -> int:
    """Weekday with Sunday as 0, matching the stored business_days."""
    return (day.weekday() + 1) % 7


def is_within_business_hours(ts: datetime, config: FollowUpConfig, tz: TzLike = "UTC") -> bool:
    local = _as_aware(ts).astimezone(_zone(tz))
    if weekday_index(local) not in config.business_days:
        return False
    return config.business_start_hour <= local.hour < config.business_end_hour


def next_business_day(day: date, config: FollowUpConfig) -> date:
    """First business day strictly after ``day``."""
    for _ in range(7):
        day += timedelta(days=1)
        if weekday_index(day) in config.business_days:
            return day
    raise ValueError("follow-up config has no business days")


def adjust_to_business_hours(
    candidate: datetime,
    config: FollowUpConfig,
    tz: TzLike = "UTC",
) -> datetime:
    """
    Return the first moment at or after ``candidate`` inside business hours.

    - business_hours_only off, or already inside the window → unchanged
    - business day, before opening → same day at opening hour
    - after closing, or a non-business day → next business day at opening

    The result keeps ``candidate``'s tzinfo (naive in → naive UTC out).
    """
    if not config.business_hours_only:
        return candidate
    if is_within_business_hours(candidate, config, tz):
        return candidate

    zone = _zone(tz)
    local = _as_aware(candidate).astimezone(zone)
    opening = time(hour=config.business_start_hour)

    if weekday_index(local) in config.business_days and local.hour < config.business_start_hour:
        target_day = local.date()
    else:
        target_day = next_business_day(local.date(), config)

    adjusted = datetime.combine(target_day, opening, tzinfo=zone)

    if candidate.tzinfo is None:
        return adjusted.astimezone(timezone.utc).replace(tzinfo=None)
    return adjusted.astimezone(candidate.tzinfo)
