"""Time-slot arithmetic for the check and backup schedules.

Everything here is pure: callers pass ``now`` in and get UTC datetimes back.
Calendar arithmetic happens in the organization timezone (``TIMEZONE``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone

from rankwatch.utils.dates import as_utc, to_local

ALLOWED_INTERVALS = (15, 30, 60)
DEFAULT_INTERVAL = 60

FREQUENCY_DAILY = "daily"
FREQUENCY_TWICE_WEEKLY = "twice_weekly"
FREQUENCY_WEEKLY = "weekly"
FREQUENCY_MONTHLY = "monthly"
FREQUENCIES = (FREQUENCY_DAILY, FREQUENCY_TWICE_WEEKLY, FREQUENCY_WEEKLY, FREQUENCY_MONTHLY)

FORMATS = ("json", "ndjson")
DEFAULT_TIME_OF_DAY = "00:00"
DEFAULT_GAP = 3

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclass(slots=True, frozen=True)
class TimeOfDay:
    hour: int
    minute: int

    @property
    def normalized(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def snap_interval(minutes) -> int:
    try:
        value = float(minutes)
    except (TypeError, ValueError):
        return DEFAULT_INTERVAL
    if value != value:  # NaN
        return DEFAULT_INTERVAL
    value = min(max(value, ALLOWED_INTERVALS[0]), ALLOWED_INTERVALS[-1])
    nearest, runner_up = sorted(ALLOWED_INTERVALS, key=lambda allowed: abs(allowed - value))[:2]
    # Halfway between two allowed values is ambiguous.
    if abs(nearest - value) == abs(runner_up - value):
        return DEFAULT_INTERVAL
    return nearest


def next_check_slot(now: datetime, interval_minutes: int) -> datetime:
    step = snap_interval(interval_minutes) * 60
    elapsed = int((as_utc(now) - _EPOCH).total_seconds())
    return datetime.fromtimestamp((elapsed // step + 1) * step, tz=timezone.utc)


def parse_time_of_day(value) -> TimeOfDay | None:
    if not isinstance(value, str):
        return None
    matched = _TIME_RE.match(value.strip())
    if not matched:
        return None
    return TimeOfDay(hour=int(matched.group(1)), minute=int(matched.group(2)))


def _resolve_time(time_of_day: str | TimeOfDay | None) -> TimeOfDay:
    if isinstance(time_of_day, TimeOfDay):
        return time_of_day
    return parse_time_of_day(time_of_day) or TimeOfDay(0, 0)


def next_daily_occurrence(now: datetime, time_of_day: str | TimeOfDay | None) -> datetime:
    at = _resolve_time(time_of_day)
    local = to_local(now)
    candidate = local.set(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= local:
        candidate = candidate.add(days=1)
    return as_utc(candidate)


def normalize_gap(gap) -> int:
    return 4 if gap == 4 else DEFAULT_GAP


def toggle_gap(gap) -> int:
    return 3 if normalize_gap(gap) == 4 else 4


def normalize_frequency(frequency) -> str:
    return frequency if frequency in FREQUENCIES else FREQUENCY_DAILY


def next_backup_slot(
    base: datetime,
    frequency: str,
    time_of_day: str | TimeOfDay | None,
    twice_weekly_gap: int = DEFAULT_GAP,
    *,
    from_scheduled: bool = True,
) -> datetime:
    """Next backup time after ``base``, at the configured local time of day.

    Monthly runs keep the day of month when advancing from a scheduled slot
    (clamped to the end of shorter months); manual runs just add 30 days.
    """
    at = _resolve_time(time_of_day)
    local = to_local(base)
    frequency = normalize_frequency(frequency)
    if frequency == FREQUENCY_MONTHLY:
        target = local.add(months=1) if from_scheduled else local.add(days=30)
    elif frequency == FREQUENCY_WEEKLY:
        target = local.add(days=7)
    elif frequency == FREQUENCY_TWICE_WEEKLY:
        target = local.add(days=normalize_gap(twice_weekly_gap))
    else:
        target = local.add(days=1)
    return as_utc(target.set(hour=at.hour, minute=at.minute, second=0, microsecond=0))


def next_backup_slot_after(
    base: datetime,
    frequency: str,
    time_of_day: str | TimeOfDay | None,
    twice_weekly_gap: int = DEFAULT_GAP,
    *,
    after: datetime,
    from_scheduled: bool = True,
) -> tuple[datetime, int]:
    """First slot of the cadence from ``base`` that is later than ``after``, and the gap to store.

    Slots missed while the service was down are skipped, not replayed. Each
    skipped twice-weekly slot still flips the gap, and monthly slots keep the
    day of month of ``base``.
    """
    frequency = normalize_frequency(frequency)
    at = _resolve_time(time_of_day)
    after = as_utc(after)
    gap = normalize_gap(twice_weekly_gap)
    slot = next_backup_slot(base, frequency, at, gap, from_scheduled=from_scheduled)
    months = 1
    while True:
        if frequency == FREQUENCY_TWICE_WEEKLY:
            gap = toggle_gap(gap)
        if slot > after:
            return slot, gap
        if frequency == FREQUENCY_MONTHLY and from_scheduled:
            months += 1
            target = to_local(base).add(months=months)
            slot = as_utc(target.set(hour=at.hour, minute=at.minute, second=0, microsecond=0))
        else:
            slot = next_backup_slot(slot, frequency, at, gap)


def backup_timeframe_days(frequency: str, twice_weekly_gap: int = DEFAULT_GAP) -> int:
    frequency = normalize_frequency(frequency)
    if frequency == FREQUENCY_WEEKLY:
        return 7
    if frequency == FREQUENCY_MONTHLY:
        return 31
    if frequency == FREQUENCY_TWICE_WEEKLY:
        return 7 - normalize_gap(twice_weekly_gap)
    return 1
