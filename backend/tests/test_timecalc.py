"""Tests for the aggregation, overlap and target calculations."""
from datetime import UTC, date, datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from timecalc import (
    MalformedEntry,
    NO_TASK,
    build_weekly_report,
    daily_totals,
    day_bounds,
    day_key_of,
    detect_long_days,
    detect_overlaps,
    group_by_day,
    group_by_project_and_task,
    normalize,
    normalize_all,
    overlapping_pairs,
    parse_hours,
    progress_percent,
    progress_status,
    target_hours_for_day,
    week_start_of,
)

TZ = ZoneInfo("UTC")
NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)  # Monday


def at(hour, minute=0, day=15):
    return datetime(2024, 1, day, hour, minute, tzinfo=UTC)


def entry(id, start, end=None, duration=None, project_id="p1", task="design"):
    return SimpleNamespace(
        id=id, project_id=project_id, task=task, start_time=start, end_time=end, duration=duration
    )


def interval(id, start, end=None, **kwargs):
    return normalize(entry(id, start, end, **kwargs), NOW, TZ)


# Normalizer

def test_closed_entry_trusts_stored_duration():
    result = interval("a", at(9), at(10), duration=1800)
    assert result.duration_seconds == 1800
    assert result.day_key == "2024-01-15"
    assert not result.is_running


def test_closed_entry_without_duration_uses_interval():
    assert interval("a", at(9), at(10, 30)).duration_seconds == 5400


def test_closed_entry_with_negative_duration_uses_interval():
    assert interval("a", at(9), at(10), duration=-5).duration_seconds == 3600


def test_running_entry_counts_elapsed_plus_stored():
    result = interval("a", NOW - timedelta(seconds=1800), duration=600)
    assert result.is_running
    assert result.duration_seconds == 2400


def test_running_entry_in_future_clamps_to_zero():
    result = interval("a", NOW + timedelta(hours=1))
    assert result.duration_seconds == 0


def test_normalize_accepts_mappings_and_naive_timestamps():
    raw = {"id": "a", "project_id": "p1", "task": None, "start_time": datetime(2024, 1, 15, 9),
           "end_time": datetime(2024, 1, 15, 10), "duration": None}
    result = normalize(raw, NOW, TZ)
    assert result.duration_seconds == 3600
    assert result.task == ""
    assert result.start_time.tzinfo is not None


def test_normalize_is_idempotent():
    e = entry("a", NOW - timedelta(minutes=5))
    assert normalize(e, NOW, TZ) == normalize(e, NOW, TZ)


def test_missing_start_time_is_rejected():
    with pytest.raises(MalformedEntry):
        normalize(entry("bad", None), NOW, TZ)


def test_normalize_all_skips_malformed_entries():
    result = normalize_all([entry("bad", None), entry("ok", at(9), at(10))], NOW, TZ)
    assert [i.id for i in result] == ["ok"]


def test_day_key_follows_viewer_zone_and_never_splits():
    paris = ZoneInfo("Europe/Paris")
    late = normalize(entry("a", at(23, 30), at(23, 50) + timedelta(minutes=20)), NOW, paris)
    # 23:30 UTC is 00:30 the next day in Paris
    assert late.day_key == "2024-01-16"
    assert normalize(entry("a", at(23, 30), at(23, 59) + timedelta(minutes=11)), NOW, TZ).day_key == "2024-01-15"


def test_day_key_and_bounds_agree():
    tz = ZoneInfo("America/New_York")
    start, end = day_bounds(date(2024, 1, 15), tz)
    assert day_key_of(start, tz) == "2024-01-15"
    assert day_key_of(end - timedelta(seconds=1), tz) == "2024-01-15"
    assert day_key_of(end, tz) == "2024-01-16"


def test_week_starts_on_sunday():
    assert week_start_of(date(2024, 1, 17)) == date(2024, 1, 14)
    assert week_start_of(date(2024, 1, 14)) == date(2024, 1, 14)
    assert week_start_of(date(2024, 1, 20)) == date(2024, 1, 14)


# Grouping

def test_closed_and_running_entry_share_a_group():
    closed = interval("a", at(9), at(10), duration=3600)
    running = interval("b", NOW - timedelta(seconds=1800))
    groups = group_by_project_and_task([closed, running])
    assert len(groups) == 1
    group = groups[0]
    assert group.entry_count == 2
    assert group.total_duration_seconds == 5400
    assert group.is_running


def test_running_flag_is_not_cleared_by_later_closed_entry():
    running = interval("a", at(11))
    closed = interval("b", at(9), at(10))
    assert group_by_project_and_task([running, closed])[0].is_running


def test_task_keys_are_trimmed_and_case_sensitive():
    intervals = [
        interval("a", at(8), at(9), task=" design "),
        interval("b", at(9), at(10), task="design"),
        interval("c", at(10), at(11), task="Design"),
        interval("d", at(6), at(7), task="   "),
    ]
    keys = [g.key for g in group_by_project_and_task(intervals)]
    assert keys == [("p1", "Design"), ("p1", "design"), ("p1", NO_TASK)]


def test_groups_sorted_by_latest_start_with_stable_ties():
    intervals = [
        interval("a", at(9), at(10), task="first"),
        interval("b", at(9), at(10), task="second"),
        interval("c", at(11), at(12), task="third"),
    ]
    groups = group_by_project_and_task(intervals)
    assert [g.task for g in groups] == ["third", "first", "second"]


def test_group_members_sorted_newest_first():
    intervals = [interval("a", at(8), at(9)), interval("b", at(10), at(11)), interval("c", at(9), at(10))]
    group = group_by_project_and_task(intervals)[0]
    assert [e.id for e in group.entries] == ["b", "c", "a"]


def test_empty_input_gives_empty_groups():
    assert group_by_project_and_task([]) == []
    assert group_by_day([]) == {}


def test_grouping_conserves_entries_and_duration():
    intervals = [
        interval("a", at(8), at(9), project_id="p1"),
        interval("b", at(9), at(9, 45), project_id="p2", task="review"),
        interval("c", at(10), at(11), project_id="p1", task=""),
        interval("d", NOW - timedelta(minutes=10), project_id="p2", task="review"),
        interval("e", at(9), at(10), day=16),
    ]
    groups = group_by_project_and_task(intervals)
    assert sum(g.entry_count for g in groups) == len(intervals)
    assert sum(g.total_duration_seconds for g in groups) == sum(i.duration_seconds for i in intervals)

    days = group_by_day(intervals)
    assert list(days) == ["2024-01-16", "2024-01-15"]
    assert sum(g.entry_count for g in days.values()) == len(intervals)
    assert daily_totals(intervals)["2024-01-16"] == 3600


# Overlaps

def test_overlapping_entries_are_flagged():
    assert detect_overlaps([interval("id1", at(9), at(10)), interval("id2", at(9, 30), at(11))]) == {"id1", "id2"}


def test_touching_entries_do_not_overlap():
    assert detect_overlaps([interval("id1", at(9), at(10)), interval("id2", at(10), at(11))]) == set()


def test_running_entries_never_overlap():
    intervals = [interval("a", at(9)), interval("b", at(9, 30)), interval("c", at(10))]
    assert detect_overlaps(intervals) == set()


def test_running_entry_is_ignored_next_to_closed_one():
    assert detect_overlaps([interval("a", at(9), at(11)), interval("b", at(10))]) == set()


def test_three_mutually_overlapping_entries_count_three_pairs():
    intervals = [
        interval("a", at(9), at(12)),
        interval("b", at(10), at(12)),
        interval("c", at(11), at(12)),
    ]
    assert len(overlapping_pairs(intervals)) == 3
    assert detect_overlaps(intervals) == {"a", "b", "c"}


def test_overlap_flags_are_symmetric():
    intervals = [
        interval("a", at(8), at(9)),
        interval("b", at(8, 30), at(8, 45)),
        interval("c", at(13), at(14)),
        interval("d", at(11), at(13, 30)),
    ]
    flagged = detect_overlaps(intervals)
    for first, second in overlapping_pairs(intervals):
        assert first in flagged and second in flagged
    assert flagged == {"a", "b", "c", "d"}


# Long days

def test_long_day_threshold():
    totals = {"2024-01-15": 34200}
    assert [(d.day_key, d.hours) for d in detect_long_days(totals, 7)] == [("2024-01-15", 9.5)]
    assert detect_long_days(totals, 10) == []


def test_long_days_exceed_strictly_and_sort_newest_first():
    totals = {"2024-01-15": 8 * 3600, "2024-01-17": 9 * 3600, "2024-01-16": 10 * 3600}
    assert [d.day_key for d in detect_long_days(totals, 8)] == ["2024-01-17", "2024-01-16"]


def test_raising_threshold_never_adds_days():
    totals = {f"2024-01-{d:02d}": d * 1800 for d in range(1, 29)}
    previous = None
    for threshold in range(0, 16):
        found = {d.day_key for d in detect_long_days(totals, threshold)}
        if previous is not None:
            assert found <= previous
        previous = found


# Targets

def test_parse_hours():
    assert parse_hours("37:00") == pytest.approx(37.0)
    assert parse_hours("07:24") == pytest.approx(7.4)
    assert parse_hours("0:30") == pytest.approx(0.5)


@pytest.mark.parametrize("value", ["", "7", "07:60", "ab:cd", "7:30:00", None])
def test_parse_hours_rejects_bad_values(value):
    with pytest.raises(ValueError):
        parse_hours(value)


def test_weekend_target_is_zero():
    assert target_hours_for_day(date(2024, 1, 20), 7.4) == 0  # Saturday
    assert target_hours_for_day(date(2024, 1, 21), 7.4) == 0  # Sunday
    assert target_hours_for_day(date(2024, 1, 19), 7.4) == 7.4  # Friday


def test_progress():
    assert progress_percent(3.7, 7.4) == pytest.approx(50)
    assert progress_percent(10, 7.4) == 100
    assert progress_percent(2, 0) == 100
    assert progress_percent(0, 0) == 0
    assert progress_status(2, 0) == "exceeded"
    assert progress_status(0, 0) == "met"
    assert progress_status(3, 7.4) == "under"


def test_weekly_report_saturday_work_exceeds_zero_target():
    intervals = [
        interval("mon", at(9), at(17), day=15),
        interval("sat", at(10), at(12), day=20),
        # Next week, ignored
        interval("sun", at(10), at(12), day=21),
    ]
    report = build_weekly_report(intervals, date(2024, 1, 14), parse_hours("07:24"), parse_hours("37:00"))

    assert report.week_end == date(2024, 1, 20)
    assert [d.day for d in report.days][0] == "Sunday"
    saturday = report.days[6]
    assert saturday.day == "Saturday"
    assert saturday.hours == 2
    assert saturday.target == 0
    assert saturday.status == "exceeded"

    monday = report.days[1]
    assert monday.hours == 8
    assert monday.target == pytest.approx(7.4)
    assert monday.status == "exceeded"
    assert report.days[2].status == "under"

    assert report.total_hours == 10
    assert report.target_hours == pytest.approx(37.0)
    assert report.status == "under"
