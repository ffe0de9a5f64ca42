"""Schedule settings: the singleton row, its repository and the write-boundary validation."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from sqlalchemy import insert, select
from sqlalchemy.engine import Engine

from rankwatch.db.tables import schedule_settings
from rankwatch.errors import ConfigurationError, ConflictError, StaleSettingsError
from rankwatch.scheduling.timeslots import (
    ALLOWED_INTERVALS,
    DEFAULT_TIME_OF_DAY,
    FORMATS,
    FREQUENCIES,
    backup_timeframe_days,
    next_check_slot,
    next_daily_occurrence,
    normalize_frequency,
    normalize_gap,
    parse_time_of_day,
    snap_interval,
)
from rankwatch.utils.dates import as_utc, utc_now

logger = logging.getLogger(__name__)

SETTINGS_ID = 1
BACKUP_STATUSES = ("idle", "success", "failed")

_DATETIME_FIELDS = (
    "next_auto_check_at",
    "last_auto_check_at",
    "next_backup_at",
    "last_backup_at",
    "updated_at",
)


@dataclass(slots=True)
class ScheduleSettings:
    id: int = SETTINGS_ID
    version: int = 0
    auto_check_enabled: bool = False
    interval_minutes: int = 60
    next_auto_check_at: datetime | None = None
    last_auto_check_at: datetime | None = None
    auto_check_started_by: str | None = None
    last_run_summary: dict[str, Any] | None = None
    last_run_failures: dict[str, str] = field(default_factory=dict)
    backup_enabled: bool = False
    backup_frequency: str = "daily"
    backup_time_of_day: str = DEFAULT_TIME_OF_DAY
    backup_format: str = "json"
    backup_bot_token: str = ""
    backup_chat_targets: list[str] = field(default_factory=list)
    backup_started_by: str | None = None
    twice_weekly_next_gap: int = 3
    next_backup_at: datetime | None = None
    last_backup_at: datetime | None = None
    last_backup_status: str = "idle"
    last_backup_error: str = ""
    updated_at: datetime | None = None


_COLUMNS = [item.name for item in fields(ScheduleSettings)]


def _settings_from_row(row) -> ScheduleSettings:
    values = {name: row[name] for name in _COLUMNS}
    for name in _DATETIME_FIELDS:
        values[name] = as_utc(values[name])
    values["last_run_failures"] = dict(values["last_run_failures"] or {})
    values["backup_chat_targets"] = list(values["backup_chat_targets"] or [])
    values["backup_bot_token"] = values["backup_bot_token"] or ""
    values["last_backup_error"] = values["last_backup_error"] or ""
    return ScheduleSettings(**values)


class SettingsRepository:
    """Loads and saves the settings row with an optimistic ``version`` check."""

    def __init__(self, engine: Engine, *, retries: int = 3) -> None:
        self.engine = engine
        self.retries = retries

    def load(self) -> ScheduleSettings:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(schedule_settings).where(schedule_settings.c.id == SETTINGS_ID)
            ).mappings().first()
            if row is None:
                settings = ScheduleSettings(version=1, updated_at=utc_now())
                conn.execute(insert(schedule_settings).values(**asdict(settings)))
                return settings
        return _settings_from_row(row)

    def save(self, settings: ScheduleSettings) -> ScheduleSettings:
        values = asdict(settings)
        values.pop("id")
        expected = values.pop("version")
        for name in _DATETIME_FIELDS:
            values[name] = as_utc(values[name])
        values["updated_at"] = utc_now()
        with self.engine.begin() as conn:
            result = conn.execute(
                schedule_settings.update()
                .where(
                    schedule_settings.c.id == settings.id,
                    schedule_settings.c.version == expected,
                )
                .values(version=expected + 1, **values)
            )
        if result.rowcount != 1:
            raise StaleSettingsError(f"settings changed since version {expected}")
        settings.version = expected + 1
        settings.updated_at = values["updated_at"]
        return settings

    def update(self, mutator: Callable[[ScheduleSettings], Any]) -> ScheduleSettings:
        """Apply ``mutator`` to a fresh copy of the row, retrying on version conflicts."""
        for attempt in range(1, self.retries + 1):
            settings = self.load()
            mutator(settings)
            try:
                return self.save(settings)
            except StaleSettingsError:
                if attempt == self.retries:
                    raise
                logger.info("Settings version conflict, retrying (%s/%s)", attempt, self.retries)
        raise StaleSettingsError("settings update retries exhausted")


def normalize_chat_targets(value) -> list[str]:
    if isinstance(value, (list, tuple)):
        items = [str(item or "").strip() for item in value]
    elif isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
    else:
        return []
    return [item for item in items if item]


def effective_bot_token(settings: ScheduleSettings, override: str | None = None) -> str:
    token = override if override is not None else settings.backup_bot_token
    return (token or "").strip() or os.environ.get("TELEGRAM_BOT_TOKEN", "").strip()


def migrate_settings(settings: ScheduleSettings) -> bool:
    """Bring a stored row in line with the current invariants. Returns whether anything changed."""
    before = asdict(settings)
    settings.interval_minutes = snap_interval(settings.interval_minutes)
    settings.backup_frequency = normalize_frequency(settings.backup_frequency)
    settings.twice_weekly_next_gap = normalize_gap(settings.twice_weekly_next_gap)
    parsed = parse_time_of_day(settings.backup_time_of_day or "")
    settings.backup_time_of_day = parsed.normalized if parsed else DEFAULT_TIME_OF_DAY
    if settings.backup_format not in FORMATS:
        settings.backup_format = "json"
    if settings.last_backup_status not in BACKUP_STATUSES:
        settings.last_backup_status = "idle"
    settings.backup_bot_token = (settings.backup_bot_token or "").strip()
    settings.backup_chat_targets = normalize_chat_targets(settings.backup_chat_targets)
    if not settings.auto_check_enabled:
        settings.next_auto_check_at = None
    if not settings.backup_enabled:
        settings.next_backup_at = None
    return asdict(settings) != before


class ScheduleUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    auto_check_enabled: bool | None = None
    interval_minutes: int | None = None

    @field_validator("interval_minutes")
    @classmethod
    def _allowed_interval(cls, value: int | None) -> int | None:
        if value is None:
            return value
        if value not in ALLOWED_INTERVALS:
            allowed = ", ".join(str(item) for item in ALLOWED_INTERVALS)
            raise ValueError(f"interval_minutes must be one of: {allowed}")
        return value


class BackupSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    backup_enabled: bool | None = None
    backup_frequency: str | None = None
    backup_time_of_day: str | None = None
    backup_format: str | None = None
    backup_bot_token: str | None = None
    backup_chat_targets: list[str] | str | None = None

    @field_validator("backup_frequency")
    @classmethod
    def _known_frequency(cls, value: str | None) -> str | None:
        if value is None:
            return value
        value = value.strip().lower()
        if value not in FREQUENCIES:
            raise ValueError(f"backup_frequency must be one of: {', '.join(FREQUENCIES)}")
        return value

    @field_validator("backup_time_of_day")
    @classmethod
    def _time_of_day(cls, value: str | None) -> str | None:
        if value is None:
            return value
        parsed = parse_time_of_day(value)
        if parsed is None:
            raise ValueError("backup_time_of_day must be in HH:mm format")
        return parsed.normalized

    @field_validator("backup_format")
    @classmethod
    def _known_format(cls, value: str | None) -> str | None:
        if value is None:
            return value
        value = value.strip().lower()
        if value not in FORMATS:
            raise ValueError(f"backup_format must be one of: {', '.join(FORMATS)}")
        return value


def validate_payload(model: type[BaseModel], payload) -> BaseModel:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error.get("loc", ())) or None
        raise ConfigurationError(error.get("msg", str(exc)), field=location) from exc


def apply_schedule_update(
    settings: ScheduleSettings, payload: ScheduleUpdate, actor: str | None, now: datetime
) -> ScheduleSettings:
    enabled = payload.auto_check_enabled
    interval_changed = payload.interval_minutes is not None

    # Interval changes need stop + start to take effect.
    if interval_changed and settings.auto_check_enabled and enabled is not False:
        raise ConflictError("Stop auto check and run again to apply time change")

    if enabled is not None:
        was_enabled = settings.auto_check_enabled
        settings.auto_check_enabled = enabled
        if enabled:
            settings.next_auto_check_at = next_check_slot(now, settings.interval_minutes)
            settings.auto_check_started_by = actor or settings.auto_check_started_by
            if not was_enabled:
                logger.info(
                    "Auto-check started by %s (%s min interval)", actor, settings.interval_minutes
                )
        else:
            settings.next_auto_check_at = None
            settings.auto_check_started_by = None

    if interval_changed:
        settings.interval_minutes = payload.interval_minutes
        if settings.auto_check_enabled:
            settings.next_auto_check_at = next_check_slot(now, settings.interval_minutes)
    return settings


def apply_backup_update(
    settings: ScheduleSettings, payload: BackupSettingsUpdate, actor: str | None, now: datetime
) -> ScheduleSettings:
    provided = payload.model_fields_set

    if payload.backup_enabled is not None:
        settings.backup_enabled = payload.backup_enabled
        if payload.backup_enabled:
            settings.backup_started_by = actor or settings.backup_started_by
            settings.next_backup_at = next_daily_occurrence(now, settings.backup_time_of_day)
        else:
            settings.backup_started_by = None
            settings.next_backup_at = None

    if payload.backup_frequency is not None:
        settings.backup_frequency = payload.backup_frequency
        settings.twice_weekly_next_gap = 3
        if settings.backup_enabled:
            settings.next_backup_at = next_daily_occurrence(now, settings.backup_time_of_day)

    if payload.backup_time_of_day is not None:
        settings.backup_time_of_day = payload.backup_time_of_day
        if settings.backup_enabled:
            settings.next_backup_at = next_daily_occurrence(now, settings.backup_time_of_day)

    if payload.backup_format is not None:
        settings.backup_format = payload.backup_format
    if "backup_bot_token" in provided:
        settings.backup_bot_token = (payload.backup_bot_token or "").strip()
    if "backup_chat_targets" in provided:
        settings.backup_chat_targets = normalize_chat_targets(payload.backup_chat_targets)
    return settings


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def sanitized(settings: ScheduleSettings) -> dict[str, Any]:
    """Settings as a plain dict with the bot token masked."""
    token = (settings.backup_bot_token or "").strip()
    return {
        "auto_check_enabled": settings.auto_check_enabled,
        "interval_minutes": snap_interval(settings.interval_minutes),
        "next_auto_check_at": _iso(settings.next_auto_check_at),
        "last_auto_check_at": _iso(settings.last_auto_check_at),
        "auto_check_started_by": settings.auto_check_started_by,
        "last_run_summary": settings.last_run_summary,
        "last_run_failures": settings.last_run_failures,
        "backup_enabled": settings.backup_enabled,
        "backup_frequency": normalize_frequency(settings.backup_frequency),
        "backup_time_of_day": settings.backup_time_of_day or DEFAULT_TIME_OF_DAY,
        "backup_timeframe_days": backup_timeframe_days(
            settings.backup_frequency, settings.twice_weekly_next_gap
        ),
        "backup_format": settings.backup_format,
        "backup_bot_token_configured": bool(token),
        "backup_bot_token_masked": f"***{token[-6:]}" if token else "",
        "backup_chat_targets": normalize_chat_targets(settings.backup_chat_targets),
        "backup_started_by": settings.backup_started_by,
        "next_backup_at": _iso(settings.next_backup_at),
        "last_backup_at": _iso(settings.last_backup_at),
        "last_backup_status": settings.last_backup_status or "idle",
        "last_backup_error": settings.last_backup_error or "",
        "version": settings.version,
    }
