"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone

import pendulum

DEFAULT_TZ = "Asia/Jakarta"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def local_tz():
    return pendulum.timezone(timezone_name())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_local(value: datetime) -> pendulum.DateTime:
    return pendulum.instance(as_utc(value)).in_timezone(local_tz())


def as_utc(value: datetime | None) -> datetime | None:
    """Return a plain UTC-aware datetime; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return datetime(
        value.year,
        value.month,
        value.day,
        value.hour,
        value.minute,
        value.second,
        value.microsecond,
        tzinfo=timezone.utc,
    )


def month_start_utc(now: datetime) -> datetime:
    local = to_local(now)
    return as_utc(local.start_of("month"))


def format_local(value: datetime) -> str:
    local = to_local(value)
    return f"{local.format('YYYY-MM-DD HH:mm:ss')} {local.tzname()}"


def format_stamp(value: datetime) -> str:
    """Compact local timestamp used in backup file names, e.g. ``20260101_070000_WIB``."""
    local = to_local(value)
    return f"{local.format('YYYYMMDD_HHmmss')}_{local.tzname()}"
