from datetime import timedelta

import pendulum
import pytest

from rankwatch.scheduling import timeslots
from rankwatch.utils.dates import as_utc

TZ = "Asia/Jakarta"


def wib(*args):
    return as_utc(pendulum.datetime(*args, tz=TZ))


@pytest.mark.parametrize(
    "value, expected",
    [
        ("abc", 60), (None, 60), (5, 15), (15, 15), (20, 15), (25, 30), (30, 30), (45, 60), (100, 60), ("30", 30),
        (22.5, 60), (40, 30), (52.5, 60),
    ],
)
def test_snap_interval(value, expected):
    assert timeslots.snap_interval(value) == expected


def test_snap_interval_is_idempotent():
    for value in (1, 17, 22.5, 29, 44, 46, 61, "x"):
        once = timeslots.snap_interval(value)
        assert timeslots.snap_interval(once) == once


def test_next_check_slot_quarter_hour():
    assert timeslots.next_check_slot(wib(2026, 3, 2, 10, 7), 15) == wib(2026, 3, 2, 10, 15)


def test_next_check_slot_is_strictly_after_now():
    now = wib(2026, 3, 2, 10, 15)
    slot = timeslots.next_check_slot(now, 15)
    assert slot == wib(2026, 3, 2, 10, 30)
    for minutes in (15, 30, 60):
        slot = timeslots.next_check_slot(now + timedelta(seconds=7), minutes)
        assert slot > now
        assert int(slot.timestamp()) % (minutes * 60) == 0


def test_parse_time_of_day():
    assert timeslots.parse_time_of_day("7:05").normalized == "07:05"
    assert timeslots.parse_time_of_day(" 23:59 ").normalized == "23:59"
    assert timeslots.parse_time_of_day("24:00") is None
    assert timeslots.parse_time_of_day("12:60") is None
    assert timeslots.parse_time_of_day(1200) is None


def test_next_daily_occurrence():
    now = wib(2026, 3, 2, 10, 0)
    assert timeslots.next_daily_occurrence(now, "11:00") == wib(2026, 3, 2, 11, 0)
    assert timeslots.next_daily_occurrence(now, "10:00") == wib(2026, 3, 3, 10, 0)
    assert timeslots.next_daily_occurrence(now, "09:30") == wib(2026, 3, 3, 9, 30)
    assert timeslots.next_daily_occurrence(now, "garbage") == wib(2026, 3, 3, 0, 0)


def test_monthly_slot_clamps_to_month_end():
    assert timeslots.next_backup_slot(wib(2026, 1, 31, 0, 0), "monthly", "00:00") == wib(2026, 2, 28, 0, 0)
    assert timeslots.next_backup_slot(wib(2028, 1, 31, 0, 0), "monthly", "00:00") == wib(2028, 2, 29, 0, 0)


def test_manual_monthly_adds_thirty_days():
    result = timeslots.next_backup_slot(wib(2026, 1, 31, 10, 0), "monthly", "00:00", from_scheduled=False)
    assert result == wib(2026, 3, 2, 0, 0)


def test_daily_and_weekly_slots_use_time_of_day():
    base = wib(2026, 3, 2, 10, 42)
    assert timeslots.next_backup_slot(base, "daily", "02:30") == wib(2026, 3, 3, 2, 30)
    assert timeslots.next_backup_slot(base, "weekly", "02:30") == wib(2026, 3, 9, 2, 30)
    assert timeslots.next_backup_slot(base, "unknown", "02:30") == wib(2026, 3, 3, 2, 30)


def test_twice_weekly_gaps_alternate():
    gap = 3
    current = wib(2026, 3, 2, 1, 0)
    gaps = []
    for _ in range(4):
        following = timeslots.next_backup_slot(current, "twice_weekly", "01:00", gap)
        gaps.append((following - current).days)
        current, gap = following, timeslots.toggle_gap(gap)
    assert gaps == [3, 4, 3, 4]


def test_missed_slots_are_skipped_not_replayed():
    daily = timeslots.next_backup_slot_after(
        wib(2026, 3, 2, 2, 0), "daily", "02:00", after=wib(2026, 3, 7, 9, 0)
    )
    assert daily == (wib(2026, 3, 8, 2, 0), 3)

    twice = timeslots.next_backup_slot_after(
        wib(2026, 3, 2, 1, 0), "twice_weekly", "01:00", 3, after=wib(2026, 3, 10, 0, 0)
    )
    assert twice == (wib(2026, 3, 12, 1, 0), 4)

    monthly, _ = timeslots.next_backup_slot_after(
        wib(2026, 1, 31, 0, 0), "monthly", "00:00", after=wib(2026, 3, 1, 0, 0)
    )
    assert monthly == wib(2026, 3, 31, 0, 0)


def test_slot_after_is_plain_next_slot_when_on_time():
    base = wib(2026, 3, 2, 1, 0)
    slot, gap = timeslots.next_backup_slot_after(base, "twice_weekly", "01:00", 3, after=base)
    assert slot == timeslots.next_backup_slot(base, "twice_weekly", "01:00", 3)
    assert gap == 4


def test_backup_timeframe_days():
    assert timeslots.backup_timeframe_days("daily") == 1
    assert timeslots.backup_timeframe_days("weekly") == 7
    assert timeslots.backup_timeframe_days("monthly") == 31
    assert timeslots.backup_timeframe_days("twice_weekly", 3) == 4
    assert timeslots.backup_timeframe_days("twice_weekly", 4) == 3
    assert timeslots.backup_timeframe_days("bogus") == 1


def test_toggle_gap():
    assert timeslots.toggle_gap(3) == 4
    assert timeslots.toggle_gap(4) == 3
    assert timeslots.toggle_gap(9) == 4
