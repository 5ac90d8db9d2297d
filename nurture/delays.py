"""Wake-up time arithmetic for delay steps and sending windows."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from .contracts import DelayConfig, SendingWindow
from .utils.time import ensure_utc


def _local(day: date, at: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def _parse_hhmm(value: Optional[str]) -> time:
    if not value:
        return time(0, 0)
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def compute_wake_time(
    config: DelayConfig, now: datetime, tz: tzinfo = timezone.utc
) -> datetime:
    """Return the UTC instant at which a delay step started at ``now`` ends.

    ``until_time`` and ``until_day`` are interpreted in ``tz``; a target equal
    to ``now`` counts as not yet passed.
    """
    now = ensure_utc(now)
    if config.delay_type == "fixed":
        return now + timedelta(**{config.delay_unit: config.delay_value})

    if config.delay_type == "until_date":
        return ensure_utc(config.until_date)

    local_now = now.astimezone(tz)
    at = _parse_hhmm(config.until_time)

    if config.delay_type == "until_time":
        target = _local(local_now.date(), at, tz)
        if target < local_now:
            target = _local(local_now.date() + timedelta(days=1), at, tz)
        return target.astimezone(timezone.utc)

    # until_day
    days_ahead = (config.until_day - local_now.weekday()) % 7
    target = _local(local_now.date() + timedelta(days=days_ahead), at, tz)
    if target < local_now:
        target = _local(local_now.date() + timedelta(days=days_ahead + 7), at, tz)
    return target.astimezone(timezone.utc)


def next_window_opening(
    window: SendingWindow, now: datetime, tz: tzinfo = timezone.utc
) -> Optional[datetime]:
    """``None`` when ``now`` falls inside the window, else its next opening (UTC)."""
    if not window.enabled:
        return None
    local_now = ensure_utc(now).astimezone(tz)
    if (
        local_now.weekday() in window.days_of_week
        and window.start_hour <= local_now.hour < window.end_hour
    ):
        return None
    for offset in range(8):
        day = local_now.date() + timedelta(days=offset)
        if day.weekday() not in window.days_of_week:
            continue
        opening = _local(day, time(window.start_hour), tz)
        if opening > local_now:
            return opening.astimezone(timezone.utc)
    raise ValueError("sending window has no opening within a week")
