"""Operator actions over the schedulers, settings and API keys."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import OrderedDict
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from rankwatch.backup.runs import BackupRunStore
from rankwatch.checks.runs import CheckRun, CheckRunStore
from rankwatch.errors import ConfigurationError
from rankwatch.jobs.auto_check import AutoCheckScheduler
from rankwatch.jobs.backup import BackupScheduler
from rankwatch.notify.render import render_notice
from rankwatch.notify.telegram import TelegramChannel
from rankwatch.scheduling.settings import (
    BackupSettingsUpdate,
    ScheduleSettings,
    ScheduleUpdate,
    SettingsRepository,
    apply_backup_update,
    apply_schedule_update,
    effective_bot_token,
    normalize_chat_targets,
    sanitized,
    validate_payload,
)
from rankwatch.scheduling.timeslots import snap_interval
from rankwatch.serp.credentials import ApiCredential
from rankwatch.serp.key_pool import ApiKeyRotationPool
from rankwatch.utils.dates import as_utc, format_local, utc_now

logger = logging.getLogger(__name__)

SLOT_WINDOW = timedelta(hours=48)
RECENT_LIMIT = 20


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _key_ref(credential: ApiCredential | None) -> dict[str, Any] | None:
    if credential is None:
        return None
    return {
        "id": credential.id,
        "name": credential.name,
        "last_used_at": _iso(credential.last_used_at),
        "last_error": credential.last_error,
    }


def _masked_key(credential: ApiCredential) -> dict[str, Any]:
    return {
        "id": credential.id,
        "name": credential.name,
        "is_active": credential.is_active,
        "masked_key": credential.masked_secret,
        "last_used_at": _iso(credential.last_used_at),
        "exhausted_at": _iso(credential.exhausted_at),
        "last_error": credential.last_error,
        "total_requests": credential.request_count_lifetime,
        "baseline_remaining": credential.baseline_remaining,
        "baseline_captured_at": _iso(credential.baseline_captured_at),
    }


def slot_statuses(runs: list[CheckRun], interval_minutes: int) -> list[dict[str, Any]]:
    """Group auto-check runs into interval slots; a slot with any failed brand is a failure."""
    step = max(1, interval_minutes) * 60
    slots: dict[int, dict[str, int]] = OrderedDict()
    for run in runs:
        epoch = int(as_utc(run.checked_at).timestamp())
        start = epoch // step * step
        counts = slots.setdefault(start, {"ok_count": 0, "fail_count": 0})
        counts["ok_count" if run.ok else "fail_count"] += 1
    return [
        {
            "slot_at": datetime.fromtimestamp(start, tz=timezone.utc).isoformat(),
            "status": "Failure" if counts["fail_count"] else "Success",
            **counts,
        }
        for start, counts in sorted(slots.items())
    ]


class AdminService:
    def __init__(
        self,
        *,
        settings: SettingsRepository,
        pool: ApiKeyRotationPool,
        check_runs: CheckRunStore,
        backup_runs: BackupRunStore,
        auto_check: AutoCheckScheduler,
        backup: BackupScheduler,
        channel_factory: Callable[[str], TelegramChannel] = TelegramChannel,
        on_update: Callable[[str], Any] | None = None,
    ) -> None:
        self.settings = settings
        self.pool = pool
        self.check_runs = check_runs
        self.backup_runs = backup_runs
        self.auto_check = auto_check
        self.backup = backup
        self.channel_factory = channel_factory
        self.on_update = on_update

    async def _run(self, func, *args, **kwargs):
        return await asyncio.get_running_loop().run_in_executor(
            None, functools.partial(func, *args, **kwargs)
        )

    def _notify(self, source: str) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(source)
        except Exception:
            logger.exception("Admin update observer failed for %s", source)

    def _view(self, settings: ScheduleSettings) -> dict[str, Any]:
        view = sanitized(settings)
        view["api_keys"] = [_masked_key(item) for item in self.pool.store.list()]
        return view

    async def get_settings(self) -> dict[str, Any]:
        settings = await self._run(self.settings.load)
        return await self._run(self._view, settings)

    async def update_schedule(
        self, payload: dict[str, Any] | ScheduleUpdate, actor: str | None = None, *, now: datetime | None = None
    ) -> dict[str, Any]:
        update = validate_payload(ScheduleUpdate, payload)
        mutator = functools.partial(
            apply_schedule_update, payload=update, actor=actor, now=as_utc(now) or utc_now()
        )
        settings = await self._run(self.settings.update, mutator)
        self._notify("schedule-update")
        return await self._run(self._view, settings)

    async def update_backup_settings(
        self,
        payload: dict[str, Any] | BackupSettingsUpdate,
        actor: str | None = None,
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        update = validate_payload(BackupSettingsUpdate, payload)
        mutator = functools.partial(
            apply_backup_update, payload=update, actor=actor, now=as_utc(now) or utc_now()
        )
        settings = await self._run(self.settings.update, mutator)
        self._notify("backup-settings-update")
        return await self._run(self._view, settings)

    async def run_check_now(self, actor: str | None = None) -> dict[str, Any]:
        status = self.auto_check.run_now(actor)
        self._notify("run-now")
        return {"started": True, "status": asdict(status)}

    async def stop_auto_check(self, actor: str | None = None) -> dict[str, Any]:
        settings = await self._run(self.settings.update, _disable_auto_check)
        stop_requested = self.auto_check.request_stop()
        logger.info("Auto-check stopped by %s (sweep in flight: %s)", actor, stop_requested)
        self._notify("stop-run")
        return {
            "stop_requested": stop_requested,
            "status": asdict(self.auto_check.status()),
            "settings": await self._run(self._view, settings),
        }

    async def run_backup_now(self, actor: str | None = None) -> dict[str, Any]:
        status = self.backup.run_now(actor)
        self._notify("backup-run-now")
        return {"started": True, "status": asdict(status)}

    async def test_backup_telegram(
        self,
        bot_token: str | None = None,
        chat_targets: list[str] | str | None = None,
        message: str | None = None,
    ) -> dict[str, Any]:
        settings = await self._run(self.settings.load)
        token = effective_bot_token(settings, bot_token)
        targets = normalize_chat_targets(
            chat_targets if chat_targets is not None else settings.backup_chat_targets
        )
        if not token:
            raise ConfigurationError("Missing TELEGRAM_BOT_TOKEN", field="backup_bot_token")
        if not targets:
            raise ConfigurationError("No Telegram chat targets configured", field="backup_chat_targets")
        text = message or render_notice("test_message", {"sent_at": format_local(utc_now())})
        channel = self.channel_factory(token)
        try:
            report = await channel.test_targets(targets, text)
        finally:
            await channel.close()
        return report.as_dict()

    # API keys

    async def add_credential(self, name: str, secret: str, *, is_active: bool = True) -> dict[str, Any]:
        await self._run(self.pool.add_credential, name, secret, is_active=is_active)
        self._notify("api-key-add")
        return await self.get_settings()

    async def update_credential(
        self,
        credential_id: int,
        *,
        name: str | None = None,
        secret: str | None = None,
        is_active: bool | None = None,
    ) -> dict[str, Any]:
        await self._run(
            self.pool.update_credential, credential_id, name=name, secret=secret, is_active=is_active
        )
        self._notify("api-key-update")
        return await self.get_settings()

    async def remove_credential(self, credential_id: int) -> dict[str, Any]:
        await self._run(self.pool.remove_credential, credential_id)
        self._notify("api-key-delete")
        return await self.get_settings()

    # Dashboard

    async def dashboard(self, now: datetime | None = None) -> dict[str, Any]:
        now = as_utc(now) or utc_now()
        return await self._run(self._dashboard, now)

    def _dashboard(self, now: datetime) -> dict[str, Any]:
        settings = self.settings.load()
        interval = snap_interval(settings.interval_minutes)
        tokens = [
            {
                "id": usage.credential.id,
                "name": usage.credential.name,
                "is_active": usage.credential.is_active,
                "monthly_limit": usage.monthly_limit,
                "total_requests": usage.requests_this_month,
                "total_requests_lifetime": usage.requests_lifetime,
                "remaining_estimated": usage.remaining_estimated,
                "baseline_remaining": usage.credential.baseline_remaining,
                "exhausted_at": _iso(usage.credential.exhausted_at),
                "last_used_at": _iso(usage.credential.last_used_at),
                "last_error": usage.credential.last_error,
            }
            for usage in self.pool.usage_summary(now)
        ]
        rotation = self.pool.rotation_status()
        latest = self.check_runs.latest()
        return {
            "settings": self._view(settings),
            "tokens": tokens,
            "rotation": {
                "active_key_count": rotation.active_count,
                "cursor": rotation.cursor,
                "rotation_key": _key_ref(rotation.rotation_key),
                "last_used_key": _key_ref(rotation.last_used_key),
            },
            "latest_run": {
                "id": latest.id,
                "brand_code": latest.brand_code,
                "checked_at": _iso(latest.checked_at),
                "trigger": latest.trigger,
                "best_own_rank": latest.best_own_rank,
                "ok": latest.ok,
            }
            if latest
            else None,
            "auto_check_status": asdict(self.auto_check.status()),
            "backup_status": asdict(self.backup.status()),
            "backup_runs": [asdict(run) for run in self.backup_runs.list_recent(RECENT_LIMIT)],
            "slot_statuses": slot_statuses(self.check_runs.recent_auto_runs(now - SLOT_WINDOW), interval),
        }


def _disable_auto_check(settings: ScheduleSettings) -> None:
    settings.auto_check_enabled = False
    settings.next_auto_check_at = None
    settings.auto_check_started_by = None
