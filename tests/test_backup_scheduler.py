from datetime import timedelta

import pendulum
import pytest

from conftest import DummyChannel
from rankwatch.backup.export import BackupSource
from rankwatch.backup.runs import BackupRunStore
from rankwatch.errors import ConflictError
from rankwatch.jobs.backup import BackupScheduler
from rankwatch.scheduling.settings import SettingsRepository
from rankwatch.utils.dates import as_utc, utc_now


def wib(*args):
    return as_utc(pendulum.datetime(*args, tz="Asia/Jakarta"))


class ChannelFactory:
    def __init__(self, **kwargs):
        self.channel = DummyChannel(**kwargs)
        self.tokens = []

    def __call__(self, token):
        self.tokens.append(token)
        return self.channel


def make_scheduler(engine, factory, **kwargs):
    return BackupScheduler(
        settings=SettingsRepository(engine),
        source=BackupSource(engine),
        runs=BackupRunStore(engine),
        channel_factory=factory,
        poll_interval=0.01,
        **kwargs,
    )


@pytest.fixture()
def backup_configured(seeded_engine, configure_settings):
    configure_settings(
        backup_enabled=True,
        backup_bot_token="123456:secret-token",
        backup_chat_targets=["-1001", "-1002"],
    )
    return seeded_engine


@pytest.mark.asyncio
async def test_manual_twice_weekly_backup(backup_configured, configure_settings):
    configure_settings(backup_frequency="twice_weekly", twice_weekly_next_gap=3)
    factory = ChannelFactory()
    scheduler = make_scheduler(backup_configured, factory)

    before = utc_now()
    scheduler.run_now("ops")
    with pytest.raises(ConflictError):
        scheduler.run_now("ops")
    await scheduler.join()

    assert factory.tokens == ["123456:secret-token"]
    assert factory.channel.closed
    settings = SettingsRepository(backup_configured).load()
    assert settings.last_backup_status == "success"
    assert settings.twice_weekly_next_gap == 4
    assert settings.next_backup_at > before + timedelta(days=2)
    assert settings.next_backup_at <= before + timedelta(days=3)

    (run,) = BackupRunStore(backup_configured).list_recent()
    assert run.status == "success"
    assert run.source == "manual"
    assert run.triggered_by == "ops"
    assert run.timeframe_days == 4
    assert run.total_collections == 4
    assert run.total_records == 7
    assert run.chat_targets == ["-1001", "-1002"]
    assert scheduler.status().is_running is False
    assert scheduler.status().last_error is None


@pytest.mark.asyncio
async def test_scheduled_monthly_keeps_day_of_month(backup_configured, configure_settings):
    configure_settings(
        backup_frequency="monthly",
        backup_time_of_day="10:00",
        next_backup_at=wib(2026, 1, 31, 10, 0),
    )
    scheduler = make_scheduler(backup_configured, ChannelFactory())

    await scheduler.tick(wib(2026, 1, 31, 9, 59))
    assert BackupRunStore(backup_configured).list_recent() == []

    await scheduler.tick(wib(2026, 1, 31, 10, 0, 30))
    settings = SettingsRepository(backup_configured).load()
    assert settings.next_backup_at == wib(2026, 2, 28, 10, 0)
    assert settings.twice_weekly_next_gap == 3
    assert BackupRunStore(backup_configured).list_recent()[0].source == "scheduler"


@pytest.mark.asyncio
async def test_twice_weekly_gaps_alternate(backup_configured, configure_settings):
    configure_settings(
        backup_frequency="twice_weekly",
        backup_time_of_day="01:30",
        twice_weekly_next_gap=3,
        next_backup_at=wib(2026, 3, 2, 1, 30),
    )
    scheduler = make_scheduler(backup_configured, ChannelFactory())
    repository = SettingsRepository(backup_configured)

    due = wib(2026, 3, 2, 1, 30)
    seen = []
    for _ in range(4):
        await scheduler.tick(due + timedelta(seconds=5))
        following = repository.load().next_backup_at
        seen.append((following - due).days)
        due = following
    assert seen == [3, 4, 3, 4]


@pytest.mark.asyncio
async def test_tick_sets_first_slot(backup_configured, configure_settings):
    configure_settings(backup_time_of_day="02:00", next_backup_at=None)
    factory = ChannelFactory()
    scheduler = make_scheduler(backup_configured, factory)

    await scheduler.tick(wib(2026, 3, 2, 9, 0))
    assert SettingsRepository(backup_configured).load().next_backup_at == wib(2026, 3, 3, 2, 0)
    assert factory.tokens == []


@pytest.mark.asyncio
async def test_failed_backup_records_partial_progress(backup_configured, configure_settings):
    configure_settings(backup_time_of_day="02:00")
    factory = ChannelFactory(fail_documents={"-1001", "-1002"})
    scheduler = make_scheduler(backup_configured, factory)

    scheduler.run_now("ops")
    await scheduler.join()

    status = scheduler.status()
    assert status.is_running is False
    assert "reached no target" in status.last_error
    settings = SettingsRepository(backup_configured).load()
    assert settings.last_backup_status == "failed"
    assert settings.last_backup_error == status.last_error
    local_next = pendulum.instance(settings.next_backup_at).in_timezone("Asia/Jakarta")
    assert (local_next.hour, local_next.minute) == (2, 0)
    assert settings.next_backup_at > utc_now()

    (run,) = BackupRunStore(backup_configured).list_recent()
    assert run.status == "failed"
    assert run.total_files == 0
    assert run.summary["failed_at"] == "brands"
    assert any("Status: FAILED" in text for _, text in factory.channel.texts)


@pytest.mark.asyncio
async def test_missing_token_fails_without_sending(seeded_engine, configure_settings):
    configure_settings(backup_enabled=True, backup_chat_targets=["-1001"])
    factory = ChannelFactory()
    scheduler = make_scheduler(seeded_engine, factory)

    scheduler.run_now()
    await scheduler.join()

    assert scheduler.status().last_error == "Missing TELEGRAM_BOT_TOKEN"
    assert factory.tokens == []
    settings = SettingsRepository(seeded_engine).load()
    assert settings.last_backup_status == "failed"
    assert BackupRunStore(seeded_engine).list_recent()[0].error == "Missing TELEGRAM_BOT_TOKEN"


@pytest.mark.asyncio
async def test_env_token_is_used_when_settings_have_none(seeded_engine, configure_settings, monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "999:env-token")
    configure_settings(backup_enabled=False, backup_chat_targets=["-1001"])
    factory = ChannelFactory()
    scheduler = make_scheduler(seeded_engine, factory)

    scheduler.run_now()
    await scheduler.join()

    assert factory.tokens == ["999:env-token"]
    settings = SettingsRepository(seeded_engine).load()
    assert settings.last_backup_status == "success"
    assert settings.next_backup_at is None


@pytest.mark.asyncio
async def test_stale_schedule_runs_once_after_downtime(backup_configured, configure_settings):
    now = utc_now()
    local = pendulum.instance(now).in_timezone("Asia/Jakarta")
    stale = local.subtract(days=5).set(hour=2, minute=0, second=0, microsecond=0)
    configure_settings(backup_frequency="daily", backup_time_of_day="02:00", next_backup_at=as_utc(stale))
    scheduler = make_scheduler(backup_configured, ChannelFactory())

    for _ in range(4):
        await scheduler.tick(now)

    assert len(BackupRunStore(backup_configured).list_recent()) == 1
    settings = SettingsRepository(backup_configured).load()
    assert now < settings.next_backup_at <= now + timedelta(days=1)
    local_next = pendulum.instance(settings.next_backup_at).in_timezone("Asia/Jakarta")
    assert (local_next.hour, local_next.minute) == (2, 0)
