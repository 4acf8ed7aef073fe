"""Time aggregation for dashboards and reports.

Everything here works on entries that were already fetched from the database.
No function touches the session, so they can be recomputed on every request.
"""
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

NO_TASK = "no-task"
WEEKEND_TARGET_HOURS = 0.0
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
ONE_SECOND = timedelta(seconds=1)


class MalformedEntry(ValueError):
    """Raised when a time entry cannot be normalized (no start time)."""

    def __init__(self, entry_id, reason: str = "missing start_time"):
        self.entry_id = entry_id
        super().__init__(f"Entry {entry_id}: {reason}")


@dataclass(frozen=True)
class NormalizedInterval:
    id: str
    project_id: str
    task: str
    day_key: str
    start_time: datetime
    end_time: Optional[datetime]
    duration_seconds: int

    @property
    def is_running(self) -> bool:
        return self.end_time is None


@dataclass
class EntryGroup:
    key: object
    total_duration_seconds: int = 0
    entry_count: int = 0
    is_running: bool = False
    entries: List[NormalizedInterval] = field(default_factory=list)

    @property
    def latest_start(self) -> datetime:
        return max(e.start_time for e in self.entries)

    def add(self, interval: NormalizedInterval) -> None:
        self.entries.append(interval)
        self.total_duration_seconds += interval.duration_seconds
        self.entry_count += 1
        # OR, a later closed entry never clears the flag
        self.is_running = self.is_running or interval.is_running


@dataclass
class ProjectTaskGroup(EntryGroup):
    @property
    def project_id(self) -> str:
        return self.key[0]

    @property
    def task(self) -> str:
        return self.key[1]


@dataclass
class DayGroup(EntryGroup):
    pass


@dataclass(frozen=True)
class LongDay:
    day_key: str
    hours: float


@dataclass(frozen=True)
class DayReport:
    day: str
    date: date
    hours: float
    target: float
    progress_percent: float
    status: str


@dataclass(frozen=True)
class WeeklyReport:
    week_start: date
    week_end: date
    days: List[DayReport]
    total_hours: float
    target_hours: float
    progress_percent: float
    status: str


# Calendar

def as_utc(ts: datetime) -> datetime:
    """Attach UTC to naive timestamps (the database stores UTC without tzinfo)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts


def day_key_of(ts: datetime, tz: ZoneInfo) -> str:
    """Calendar day of a timestamp in the viewer's zone, as YYYY-MM-DD."""
    return as_utc(ts).astimezone(tz).date().isoformat()


def week_start_of(day: date) -> date:
    """Sunday on or before the given day."""
    # date.weekday(): Monday=0 .. Sunday=6
    return day - timedelta(days=(day.weekday() + 1) % 7)


def day_bounds(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """Local midnight-to-midnight of a day, expressed in UTC."""
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


# Normalizer

def _field(entry, name: str):
    if isinstance(entry, Mapping):
        return entry.get(name)
    return getattr(entry, name, None)


def normalize(entry, now: datetime, tz: ZoneInfo) -> NormalizedInterval:
    """Turn a stored time entry into a canonical interval.

    Closed entries trust their stored duration when it is present and
    non-negative. Running entries add the wall-clock time elapsed since
    ``start_time`` to whatever duration was accumulated before a resume.
    An elapsed time below zero (clock skew) counts as zero.

    Raises:
        MalformedEntry: the entry has no start time.
    """
    entry_id = _field(entry, "id")
    start = _field(entry, "start_time")
    if start is None:
        raise MalformedEntry(entry_id)
    start = as_utc(start)

    end = _field(entry, "end_time")
    stored = _field(entry, "duration")

    if end is not None:
        end = as_utc(end)
        if stored is not None and stored >= 0:
            duration = int(stored)
        else:
            duration = (end - start) // ONE_SECOND
    else:
        elapsed = (as_utc(now) - start) // ONE_SECOND
        duration = max(elapsed, 0) + int(stored or 0)

    return NormalizedInterval(
        id=entry_id,
        project_id=_field(entry, "project_id"),
        task=_field(entry, "task") or "",
        day_key=day_key_of(start, tz),
        start_time=start,
        end_time=end,
        duration_seconds=duration,
    )


def normalize_all(entries: Iterable, now: datetime, tz: ZoneInfo) -> List[NormalizedInterval]:
    """Normalize a batch, skipping (and logging) malformed records."""
    intervals = []
    for entry in entries:
        try:
            intervals.append(normalize(entry, now, tz))
        except MalformedEntry as e:
            logger.warning(f"Skipping malformed time entry: {e}")
    return intervals


# Grouping

def task_key(task: Optional[str]) -> str:
    return (task or "").strip() or NO_TASK


def _sort_groups(groups: Iterable[EntryGroup]) -> None:
    for group in groups:
        group.entries.sort(key=lambda e: e.start_time, reverse=True)


def group_by_project_and_task(intervals: Iterable[NormalizedInterval]) -> List[ProjectTaskGroup]:
    """Bucket intervals by (project, trimmed task).

    Groups come back most recent activity first; groups with the same latest
    start keep the order in which they were first seen.
    """
    groups: Dict[Tuple[str, str], ProjectTaskGroup] = {}
    for interval in intervals:
        key = (interval.project_id, task_key(interval.task))
        if key not in groups:
            groups[key] = ProjectTaskGroup(key=key)
        groups[key].add(interval)

    _sort_groups(groups.values())
    # sorted() is stable with reverse=True as well
    return sorted(groups.values(), key=lambda g: g.latest_start, reverse=True)


def group_by_day(intervals: Iterable[NormalizedInterval]) -> Dict[str, DayGroup]:
    """Bucket intervals by day key, newest day first."""
    groups: Dict[str, DayGroup] = {}
    for interval in intervals:
        if interval.day_key not in groups:
            groups[interval.day_key] = DayGroup(key=interval.day_key)
        groups[interval.day_key].add(interval)

    _sort_groups(groups.values())
    return {key: groups[key] for key in sorted(groups, reverse=True)}


def daily_totals(intervals: Iterable[NormalizedInterval]) -> Dict[str, int]:
    return {key: group.total_duration_seconds for key, group in group_by_day(intervals).items()}


# Overlaps and thresholds

def overlapping_pairs(day_intervals: Iterable[NormalizedInterval]) -> List[Tuple[str, str]]:
    """Every pair of closed intervals whose ranges intersect.

    Running intervals never overlap anything since their end is unknown.
    Touching endpoints (one ends exactly when the next starts) do not count.
    """
    closed = sorted(
        (i for i in day_intervals if i.start_time is not None and i.end_time is not None),
        key=lambda i: i.start_time,
    )
    pairs = []
    for idx, first in enumerate(closed):
        for second in closed[idx + 1:]:
            if second.start_time < first.end_time:
                pairs.append((first.id, second.id))
    return pairs


def detect_overlaps(day_intervals: Iterable[NormalizedInterval]) -> Set[str]:
    """Ids of every closed interval that overlaps at least one other."""
    ids: Set[str] = set()
    for first, second in overlapping_pairs(day_intervals):
        ids.add(first)
        ids.add(second)
    return ids


def detect_long_days(totals: Mapping, threshold_hours: float) -> List[LongDay]:
    """Days whose worked time strictly exceeds the threshold, newest first."""
    long_days = [
        LongDay(day_key=day_key, hours=seconds / 3600)
        for day_key, seconds in totals.items()
        if seconds / 3600 > threshold_hours
    ]
    return sorted(long_days, key=lambda d: d.day_key, reverse=True)


# Targets

def parse_hours(value: str) -> float:
    """Convert an "HH:mm" string to decimal hours ("07:24" -> 7.4)."""
    try:
        hours_str, minutes_str = value.split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid HH:mm value: {value!r}") from e
    if hours < 0 or not 0 <= minutes < 60:
        raise ValueError(f"Invalid HH:mm value: {value!r}")
    return hours + minutes / 60


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def target_hours_for_day(day: date, daily_target: float) -> float:
    return WEEKEND_TARGET_HOURS if is_weekend(day) else daily_target


def progress_percent(hours: float, target: float) -> float:
    """Share of ``target`` worked, capped at 100 for progress bars.

    Going over the target, including any work on a zero-target weekend day,
    shows up as 100 here and as ``"exceeded"`` in :func:`progress_status`.
    """
    if target <= 0:
        return 100.0 if hours > 0 else 0.0
    return min(hours / target * 100, 100.0)


def progress_status(hours: float, target: float) -> str:
    if hours > target:
        return "exceeded"
    if hours == target:
        return "met"
    return "under"


def build_weekly_report(
    intervals: Iterable[NormalizedInterval],
    week_start: date,
    daily_target: float,
    weekly_target: float,
) -> WeeklyReport:
    """Hours worked per day of the week starting ``week_start`` against targets.

    Intervals outside the seven days are ignored.
    """
    totals = daily_totals(intervals)
    days = []
    for offset in range(7):
        day = week_start + timedelta(days=offset)
        hours = totals.get(day.isoformat(), 0) / 3600
        target = target_hours_for_day(day, daily_target)
        days.append(
            DayReport(
                day=DAY_NAMES[(day.weekday() + 1) % 7],
                date=day,
                hours=hours,
                target=target,
                progress_percent=progress_percent(hours, target),
                status=progress_status(hours, target),
            )
        )

    total_hours = sum(d.hours for d in days)
    return WeeklyReport(
        week_start=week_start,
        week_end=week_start + timedelta(days=6),
        days=days,
        total_hours=total_hours,
        target_hours=weekly_target,
        progress_percent=progress_percent(total_hours, weekly_target),
        status=progress_status(total_hours, weekly_target),
    )
