from datetime import timedelta

import pendulum
import pytest

from rankwatch.errors import ConfigurationError, ConflictError, StaleSettingsError
from rankwatch.scheduling.settings import (
    BackupSettingsUpdate,
    ScheduleSettings,
    ScheduleUpdate,
    SettingsRepository,
    apply_backup_update,
    apply_schedule_update,
    effective_bot_token,
    migrate_settings,
    normalize_chat_targets,
    sanitized,
    validate_payload,
)
from rankwatch.utils.dates import as_utc

NOW = as_utc(pendulum.datetime(2026, 3, 2, 10, 7, tz="Asia/Jakarta"))


def test_load_creates_default_row(engine):
    settings = SettingsRepository(engine).load()
    assert settings.version == 1
    assert not settings.auto_check_enabled
    assert settings.interval_minutes == 60
    assert settings.backup_chat_targets == []


def test_save_bumps_version_and_detects_stale_writes(engine):
    repository = SettingsRepository(engine)
    first = repository.load()
    second = repository.load()
    first.interval_minutes = 30
    repository.save(first)
    assert first.version == 2
    second.backup_format = "ndjson"
    with pytest.raises(StaleSettingsError):
        repository.save(second)


def test_update_retries_without_losing_external_edit(engine):
    repository = SettingsRepository(engine)
    repository.load()
    calls = []

    def mutate(settings):
        calls.append(settings.version)
        if len(calls) == 1:
            other = repository.load()
            other.backup_format = "ndjson"
            repository.save(other)
        settings.interval_minutes = 30

    result = repository.update(mutate)
    assert calls == [1, 2]
    stored = repository.load()
    assert result.version == stored.version == 3
    assert stored.interval_minutes == 30
    assert stored.backup_format == "ndjson"


def test_update_gives_up_after_retries(engine):
    repository = SettingsRepository(engine, retries=2)
    repository.load()

    def always_conflict(settings):
        other = repository.load()
        repository.save(other)

    with pytest.raises(StaleSettingsError):
        repository.update(always_conflict)


def test_enable_sets_next_slot():
    settings = apply_schedule_update(
        ScheduleSettings(interval_minutes=15), ScheduleUpdate(auto_check_enabled=True), "ops", NOW
    )
    assert settings.auto_check_enabled
    assert settings.auto_check_started_by == "ops"
    assert settings.next_auto_check_at == as_utc(pendulum.datetime(2026, 3, 2, 10, 15, tz="Asia/Jakarta"))


def test_interval_change_while_enabled_conflicts():
    settings = ScheduleSettings(auto_check_enabled=True, next_auto_check_at=NOW)
    with pytest.raises(ConflictError):
        apply_schedule_update(settings, ScheduleUpdate(interval_minutes=30), "ops", NOW)
    with pytest.raises(ConflictError):
        apply_schedule_update(settings, ScheduleUpdate(auto_check_enabled=True, interval_minutes=30), "ops", NOW)


def test_interval_change_with_disable_is_allowed():
    settings = ScheduleSettings(auto_check_enabled=True, next_auto_check_at=NOW, auto_check_started_by="ops")
    apply_schedule_update(settings, ScheduleUpdate(auto_check_enabled=False, interval_minutes=30), "ops", NOW)
    assert settings.interval_minutes == 30
    assert settings.next_auto_check_at is None
    assert settings.auto_check_started_by is None


def test_invalid_interval_is_rejected():
    with pytest.raises(ConfigurationError) as excinfo:
        validate_payload(ScheduleUpdate, {"interval_minutes": 20})
    assert excinfo.value.field == "interval_minutes"


def test_backup_update_validation():
    with pytest.raises(ConfigurationError):
        validate_payload(BackupSettingsUpdate, {"backup_frequency": "hourly"})
    with pytest.raises(ConfigurationError):
        validate_payload(BackupSettingsUpdate, {"backup_time_of_day": "25:00"})
    with pytest.raises(ConfigurationError):
        validate_payload(BackupSettingsUpdate, {"backup_format": "csv"})
    update = validate_payload(
        BackupSettingsUpdate, {"backup_frequency": "Weekly", "backup_time_of_day": "7:05", "backup_format": "NDJSON"}
    )
    assert update.backup_frequency == "weekly"
    assert update.backup_time_of_day == "07:05"
    assert update.backup_format == "ndjson"


def test_backup_frequency_change_resets_gap():
    settings = ScheduleSettings(
        backup_enabled=True, backup_frequency="twice_weekly", twice_weekly_next_gap=4, backup_time_of_day="02:00"
    )
    apply_backup_update(settings, BackupSettingsUpdate(backup_frequency="weekly"), "ops", NOW)
    assert settings.backup_frequency == "weekly"
    assert settings.twice_weekly_next_gap == 3
    assert settings.next_backup_at == as_utc(pendulum.datetime(2026, 3, 3, 2, 0, tz="Asia/Jakarta"))


def test_backup_enable_disable_and_targets():
    settings = ScheduleSettings(backup_bot_token="old-token")
    update = validate_payload(
        BackupSettingsUpdate,
        {"backup_enabled": True, "backup_chat_targets": "-100123, 456,,", "backup_bot_token": ""},
    )
    apply_backup_update(settings, update, "ops", NOW)
    assert settings.backup_enabled
    assert settings.backup_started_by == "ops"
    assert settings.next_backup_at == NOW.replace(second=0) + timedelta(hours=13, minutes=53)
    assert settings.backup_chat_targets == ["-100123", "456"]
    assert settings.backup_bot_token == ""
    apply_backup_update(settings, BackupSettingsUpdate(backup_enabled=False), "ops", NOW)
    assert settings.next_backup_at is None
    assert settings.backup_started_by is None
    assert settings.backup_chat_targets == ["-100123", "456"]


def test_normalize_chat_targets():
    assert normalize_chat_targets([" a ", "", None, 42]) == ["a", "42"]
    assert normalize_chat_targets("a,b") == ["a", "b"]
    assert normalize_chat_targets(None) == []


def test_migrate_settings():
    settings = ScheduleSettings(
        interval_minutes=45,
        backup_frequency="hourly",
        backup_time_of_day="bad",
        backup_format="xml",
        twice_weekly_next_gap=9,
        backup_chat_targets=" a , b",
        next_auto_check_at=NOW,
        next_backup_at=NOW,
    )
    assert migrate_settings(settings)
    assert settings.interval_minutes == 60
    assert settings.backup_frequency == "daily"
    assert settings.backup_time_of_day == "00:00"
    assert settings.backup_format == "json"
    assert settings.twice_weekly_next_gap == 3
    assert settings.backup_chat_targets == ["a", "b"]
    assert settings.next_auto_check_at is None
    assert settings.next_backup_at is None
    assert not migrate_settings(settings)


def test_sanitized_masks_token():
    view = sanitized(ScheduleSettings(backup_bot_token="123456:ABCDEFGHIJ"))
    assert view["backup_bot_token_configured"]
    assert view["backup_bot_token_masked"] == "***EFGHIJ"
    assert "backup_bot_token" not in view


def test_effective_bot_token_falls_back_to_env(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "env-token")
    assert effective_bot_token(ScheduleSettings()) == "env-token"
    assert effective_bot_token(ScheduleSettings(backup_bot_token="db-token")) == "db-token"
    assert effective_bot_token(ScheduleSettings(backup_bot_token="db-token"), "override") == "override"
