"""Scheduled Telegram backups."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from rankwatch.backup.export import MAX_ROWS_PER_FILE, BackupSource, ExportProgress, run_backup
from rankwatch.backup.runs import (
    SOURCE_MANUAL,
    SOURCE_SCHEDULER,
    STATUS_FAILED,
    STATUS_SUCCESS,
    BackupRun,
    BackupRunStore,
)
from rankwatch.errors import BackupAbortedError, ConfigurationError, ConflictError
from rankwatch.jobs.auto_check import POLL_INTERVAL_SECONDS
from rankwatch.notify.telegram import TelegramChannel
from rankwatch.scheduling.settings import (
    ScheduleSettings,
    SettingsRepository,
    effective_bot_token,
    normalize_chat_targets,
)
from rankwatch.scheduling.timeslots import (
    DEFAULT_GAP,
    FREQUENCY_TWICE_WEEKLY,
    backup_timeframe_days,
    next_backup_slot_after,
    next_daily_occurrence,
)
from rankwatch.utils.dates import as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackupStatus:
    is_running: bool
    poll_interval_seconds: float
    last_run_source: str | None = None
    triggered_by: str | None = None
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_error: str | None = None


class BackupScheduler:
    def __init__(
        self,
        *,
        settings: SettingsRepository,
        source: BackupSource,
        runs: BackupRunStore,
        channel_factory: Callable[[str], TelegramChannel] = TelegramChannel,
        on_status_change: Callable[[BackupStatus], Any] | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_rows: int = MAX_ROWS_PER_FILE,
    ) -> None:
        self.settings = settings
        self.source = source
        self.runs = runs
        self.channel_factory = channel_factory
        self.on_status_change = on_status_change
        self.poll_interval = poll_interval
        self.max_rows = max_rows
        self._running = False
        self._source: str | None = None
        self._triggered_by: str | None = None
        self._last_started: datetime | None = None
        self._last_finished: datetime | None = None
        self._last_error: str | None = None
        self._poller: asyncio.Task | None = None
        self._task: asyncio.Task | None = None

    def status(self) -> BackupStatus:
        return BackupStatus(
            is_running=self._running,
            poll_interval_seconds=self.poll_interval,
            last_run_source=self._source,
            triggered_by=self._triggered_by,
            last_run_started_at=self._last_started,
            last_run_finished_at=self._last_finished,
            last_error=self._last_error,
        )

    def _notify(self) -> None:
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(self.status())
        except Exception:
            logger.exception("Backup status observer failed")

    def start(self) -> None:
        if self._poller is not None:
            return
        self._poller = asyncio.create_task(self._poll_loop(), name="backup-poller")

    async def shutdown(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            await asyncio.gather(self._poller, return_exceptions=True)
            self._poller = None
        await self.join()

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Backup tick failed")
            await asyncio.sleep(self.poll_interval)

    async def join(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def tick(self, now: datetime | None = None) -> None:
        if self._running:
            return
        loop = asyncio.get_running_loop()
        settings = await loop.run_in_executor(None, self.settings.load)
        if not settings.backup_enabled:
            return
        now = as_utc(now) or utc_now()
        if settings.next_backup_at is None:
            await loop.run_in_executor(
                None, self.settings.update, functools.partial(_ensure_next_backup, now=now)
            )
            return
        if now < settings.next_backup_at:
            return
        if self._running:
            return
        self._claim(SOURCE_SCHEDULER, settings.backup_started_by, settings.next_backup_at, True, now)
        await self.join()

    def run_now(self, triggered_by: str | None = None) -> BackupStatus:
        if self._running:
            raise ConflictError("Backup is already running")
        now = utc_now()
        self._claim(SOURCE_MANUAL, triggered_by, now, False, now)
        return self.status()

    def _claim(
        self,
        source: str,
        triggered_by: str | None,
        scheduled_at: datetime,
        from_scheduled: bool,
        now: datetime,
    ) -> None:
        self._running = True
        self._source = source
        self._triggered_by = triggered_by
        self._last_started = utc_now()
        self._last_error = None
        self._notify()
        self._task = asyncio.create_task(
            self._execute(source, triggered_by, scheduled_at, from_scheduled, now), name=f"backup-{source}"
        )

    async def _execute(
        self,
        source: str,
        triggered_by: str | None,
        scheduled_at: datetime,
        from_scheduled: bool,
        now: datetime,
    ) -> None:
        loop = asyncio.get_running_loop()
        started_at = self._last_started or utc_now()
        try:
            settings = await loop.run_in_executor(None, self.settings.load)
            targets = normalize_chat_targets(settings.backup_chat_targets)
            timeframe_days = backup_timeframe_days(settings.backup_frequency, settings.twice_weekly_next_gap)
            run = BackupRun(
                source=source,
                status=STATUS_SUCCESS,
                triggered_by=triggered_by,
                started_at=started_at,
                finished_at=started_at,
                timeframe_days=timeframe_days,
                format=settings.backup_format,
                chat_targets=targets,
            )
            try:
                progress = await self._export(settings, targets, source, timeframe_days, started_at)
            except Exception as exc:
                await self._record_failure(run, exc)
                return
            _apply_progress(run, progress)
            run.finished_at = progress.finished_at or utc_now()
            await loop.run_in_executor(None, self.runs.insert, run)
            await loop.run_in_executor(
                None,
                self.settings.update,
                functools.partial(
                    _record_success,
                    finished_at=run.finished_at,
                    scheduled_at=scheduled_at,
                    from_scheduled=from_scheduled,
                    now=now,
                ),
            )
            logger.info(
                "Backup (%s) sent %s records in %s files", source, run.total_records, run.total_files
            )
        except Exception as exc:
            self._last_error = str(exc) or exc.__class__.__name__
            logger.exception("Backup bookkeeping failed")
        finally:
            self._running = False
            self._last_finished = utc_now()
            self._notify()

    async def _export(
        self,
        settings: ScheduleSettings,
        targets: list[str],
        source: str,
        timeframe_days: int,
        started_at: datetime,
    ) -> ExportProgress:
        token = effective_bot_token(settings)
        if not token:
            raise ConfigurationError("Missing TELEGRAM_BOT_TOKEN", field="backup_bot_token")
        if not targets:
            raise ConfigurationError("No Telegram chat targets configured", field="backup_chat_targets")
        channel = self.channel_factory(token)
        try:
            return await run_backup(
                self.source,
                channel,
                targets,
                run_source=source,
                fmt=settings.backup_format,
                timeframe_days=timeframe_days,
                max_rows=self.max_rows,
                started_at=started_at,
            )
        finally:
            await channel.close()

    async def _record_failure(self, run: BackupRun, exc: Exception) -> None:
        loop = asyncio.get_running_loop()
        cause = exc.cause if isinstance(exc, BackupAbortedError) else exc
        message = str(cause) or cause.__class__.__name__
        self._last_error = message
        logger.error("Backup (%s) failed: %s", run.source, message)
        if isinstance(exc, BackupAbortedError):
            _apply_progress(run, exc.progress)
        run.status = STATUS_FAILED
        run.error = message
        run.finished_at = utc_now()
        await loop.run_in_executor(None, self.runs.insert, run)
        await loop.run_in_executor(
            None,
            self.settings.update,
            functools.partial(_record_failed, finished_at=run.finished_at, error=message),
        )


def _apply_progress(run: BackupRun, progress: ExportProgress) -> None:
    run.total_collections = progress.total_collections
    run.total_records = progress.total_records
    run.total_files = progress.total_files
    run.summary = progress.summary()


def _ensure_next_backup(settings: ScheduleSettings, *, now: datetime) -> None:
    if settings.backup_enabled and settings.next_backup_at is None:
        settings.next_backup_at = next_daily_occurrence(now, settings.backup_time_of_day)


def _record_success(
    settings: ScheduleSettings,
    *,
    finished_at: datetime,
    scheduled_at: datetime,
    from_scheduled: bool,
    now: datetime,
) -> None:
    settings.last_backup_at = finished_at
    settings.last_backup_status = STATUS_SUCCESS
    settings.last_backup_error = ""
    next_at, gap = next_backup_slot_after(
        scheduled_at,
        settings.backup_frequency,
        settings.backup_time_of_day,
        settings.twice_weekly_next_gap,
        after=now,
        from_scheduled=from_scheduled,
    )
    settings.next_backup_at = next_at if settings.backup_enabled else None
    settings.twice_weekly_next_gap = gap if settings.backup_frequency == FREQUENCY_TWICE_WEEKLY else DEFAULT_GAP


def _record_failed(settings: ScheduleSettings, *, finished_at: datetime, error: str) -> None:
    settings.last_backup_status = STATUS_FAILED
    settings.last_backup_error = error
    if settings.backup_enabled:
        settings.next_backup_at = next_daily_occurrence(finished_at, settings.backup_time_of_day)
    else:
        settings.next_backup_at = None
