"""
Window Selector for scheduled jobs.

Pure functions of "now" that compute the time range a job invocation
operates on:
- H-1 reminder: the whole calendar day after today
- H-0 reminder: 60-120 minutes from now
- Cleanup / staleness: an age cutoff

All windows are half-open ``[start, end)``. Calendar boundaries are computed
in the scheduler timezone; returned instants are always timezone-aware.
"""
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

from app.models.enums import ReminderKind


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time interval used to select candidates."""
    start: datetime
    end: datetime
    kind: Optional[ReminderKind] = None

    def contains(self, moment: datetime) -> bool:
        """True if ``start <= moment < end``."""
        return self.start <= _as_aware(moment, self.start.tzinfo) < self.end


def resolve_timezone(tz: Union[str, tzinfo, None]) -> tzinfo:
    """Accept a zone name or tzinfo, defaulting to UTC."""
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def _as_aware(moment: datetime, tz: Optional[tzinfo]) -> datetime:
    # Naive values are wall-clock times in the scheduler timezone
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz or timezone.utc)
    return moment


def local_midnight(now: datetime, tz: Union[str, tzinfo, None] = None) -> datetime:
    """Midnight at the start of ``now``'s calendar day in ``tz``."""
    zone = resolve_timezone(tz)
    local_now = _as_aware(now, zone).astimezone(zone)
    return datetime.combine(local_now.date(), time(0, 0), tzinfo=zone)


def h1_reminder_window(now: datetime, tz: Union[str, tzinfo, None] = None) -> TimeWindow:
    """
    Tomorrow's calendar day: ``[midnight(now+1d), midnight(now+2d))``.

    Example:
        now = 2024-06-10T08:00 -> [2024-06-11T00:00, 2024-06-12T00:00)
    """
    zone = resolve_timezone(tz)
    today = local_midnight(now, zone).date()
    start = datetime.combine(today + timedelta(days=1), time(0, 0), tzinfo=zone)
    end = datetime.combine(today + timedelta(days=2), time(0, 0), tzinfo=zone)
    return TimeWindow(start=start, end=end, kind=ReminderKind.H1)


def h0_reminder_window(
    now: datetime,
    tz: Union[str, tzinfo, None] = None,
    start_offset: timedelta = timedelta(minutes=60),
    end_offset: timedelta = timedelta(minutes=120),
) -> TimeWindow:
    """Events starting soon: ``[now+60min, now+120min)``."""
    if end_offset <= start_offset:
        raise ValueError("end_offset must be greater than start_offset")
    anchor = _as_aware(now, resolve_timezone(tz))
    return TimeWindow(
        start=anchor + start_offset,
        end=anchor + end_offset,
        kind=ReminderKind.H0,
    )


def reminder_window(
    kind: ReminderKind,
    now: datetime,
    tz: Union[str, tzinfo, None] = None,
    h0_start_minutes: int = 60,
    h0_end_minutes: int = 120,
) -> TimeWindow:
    """Dispatch to the window function for ``kind``."""
    if kind is ReminderKind.H1:
        return h1_reminder_window(now, tz)
    return h0_reminder_window(
        now,
        tz,
        start_offset=timedelta(minutes=h0_start_minutes),
        end_offset=timedelta(minutes=h0_end_minutes),
    )


def stale_cutoff(now: datetime, age: timedelta, tz: Union[str, tzinfo, None] = None) -> datetime:
    """Instant before which a record counts as stale."""
    return _as_aware(now, resolve_timezone(tz)) - age


def cleanup_cutoff(now: datetime, days: int = 30, tz: Union[str, tzinfo, None] = None) -> datetime:
    """Records with ``created_at < cutoff`` are eligible for cleanup."""
    return stale_cutoff(now, timedelta(days=days), tz)
