"""Automatic rank-check scheduling."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from rankwatch.catalog.store import CatalogStore
from rankwatch.checks.runner import build_run, check_brand
from rankwatch.checks.runs import TRIGGER_AUTO, TRIGGER_MANUAL, CheckRunStore
from rankwatch.errors import ConflictError
from rankwatch.matching.lookup import build_lookup
from rankwatch.scheduling.settings import ScheduleSettings, SettingsRepository
from rankwatch.scheduling.timeslots import next_check_slot
from rankwatch.serp.client import SerpClient
from rankwatch.serp.key_pool import ApiKeyRotationPool
from rankwatch.utils.dates import as_utc, utc_now

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = float(os.environ.get("POLL_INTERVAL_SECONDS", 60))

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_STOPPING = "stopping"


@dataclass(slots=True)
class AutoCheckStatus:
    state: str
    poll_interval_seconds: float
    trigger: str | None = None
    triggered_by: str | None = None
    current_brand: str | None = None
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_error: str | None = None
    last_summary: dict[str, Any] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state != STATE_IDLE

    @property
    def stop_requested(self) -> bool:
        return self.state == STATE_STOPPING


class AutoCheckScheduler:
    """Polls the settings row and sweeps all active brands when a slot is due.

    Mutual exclusion is the in-memory ``state``: it is checked and claimed
    without an await in between, so concurrent callers on the event loop cannot
    both start a sweep.
    """

    def __init__(
        self,
        *,
        settings: SettingsRepository,
        catalog: CatalogStore,
        pool: ApiKeyRotationPool,
        client: SerpClient,
        runs: CheckRunStore,
        on_status_change: Callable[[AutoCheckStatus], Any] | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.pool = pool
        self.client = client
        self.runs = runs
        self.on_status_change = on_status_change
        self.poll_interval = poll_interval
        self._state = STATE_IDLE
        self._trigger: str | None = None
        self._triggered_by: str | None = None
        self._current_brand: str | None = None
        self._last_started: datetime | None = None
        self._last_finished: datetime | None = None
        self._last_error: str | None = None
        self._last_summary: dict[str, Any] = {}
        self._poller: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None

    def status(self) -> AutoCheckStatus:
        return AutoCheckStatus(
            state=self._state,
            poll_interval_seconds=self.poll_interval,
            trigger=self._trigger,
            triggered_by=self._triggered_by,
            current_brand=self._current_brand,
            last_run_started_at=self._last_started,
            last_run_finished_at=self._last_finished,
            last_error=self._last_error,
            last_summary=dict(self._last_summary),
        )

    def _notify(self) -> None:
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(self.status())
        except Exception:
            logger.exception("Auto-check status observer failed")

    # Lifecycle

    def start(self) -> None:
        if self._poller is not None:
            return
        self._poller = asyncio.create_task(self._poll_loop(), name="auto-check-poller")

    async def shutdown(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            await asyncio.gather(self._poller, return_exceptions=True)
            self._poller = None
        self.request_stop()
        await self.join()

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Auto-check tick failed")
            await asyncio.sleep(self.poll_interval)

    async def join(self) -> None:
        if self._sweep_task is not None:
            await asyncio.gather(self._sweep_task, return_exceptions=True)

    # Triggers

    async def tick(self, now: datetime | None = None) -> None:
        if self._state != STATE_IDLE:
            return
        loop = asyncio.get_running_loop()
        settings = await loop.run_in_executor(None, self.settings.load)
        if not settings.auto_check_enabled:
            return
        now = as_utc(now) or utc_now()
        if settings.next_auto_check_at is None:
            await loop.run_in_executor(
                None, self.settings.update, functools.partial(_ensure_next_slot, now=now)
            )
            return
        if now < settings.next_auto_check_at:
            return
        if self._state != STATE_IDLE:
            return
        self._claim(TRIGGER_AUTO, settings.auto_check_started_by)
        await self.join()

    def run_now(self, triggered_by: str | None = None) -> AutoCheckStatus:
        """Start a manual sweep in the background and return immediately."""
        if self._state != STATE_IDLE:
            raise ConflictError("Auto check is already running")
        self._claim(TRIGGER_MANUAL, triggered_by)
        return self.status()

    def request_stop(self) -> bool:
        if self._state == STATE_IDLE:
            return False
        if self._state == STATE_RUNNING:
            self._state = STATE_STOPPING
            logger.info("Stop requested for %s sweep", self._trigger)
            self._notify()
        return True

    def _claim(self, trigger: str, triggered_by: str | None) -> None:
        self._state = STATE_RUNNING
        self._trigger = trigger
        self._triggered_by = triggered_by
        self._last_started = utc_now()
        self._last_error = None
        self._notify()
        self._sweep_task = asyncio.create_task(self._sweep(trigger), name=f"auto-check-{trigger}")

    # Sweep

    async def _sweep(self, trigger: str) -> None:
        loop = asyncio.get_running_loop()
        started_at = self._last_started or utc_now()
        ok_count = fail_count = skipped_count = 0
        failures: dict[str, str] = {}
        stopped = False
        try:
            all_brands = await loop.run_in_executor(None, self.catalog.list_brands)
            domains = await loop.run_in_executor(None, self.catalog.list_tracked_domains)
            lookup = build_lookup(domains, {brand.id: brand for brand in all_brands})
            active = [brand for brand in all_brands if brand.is_active]
            logger.info(
                "Starting %s sweep over %s brands (%s tracked domains)", trigger, len(active), len(lookup)
            )

            for index, brand in enumerate(active):
                if self._state == STATE_STOPPING:
                    stopped = True
                    skipped_count = len(active) - index
                    break
                self._current_brand = brand.code
                self._notify()
                try:
                    run = await check_brand(
                        brand, lookup, pool=self.pool, client=self.client, runs=self.runs, trigger=trigger
                    )
                except Exception as exc:
                    logger.exception("Check crashed for %s", brand.code)
                    reason = str(exc) or exc.__class__.__name__
                    await self._record_crash(brand, trigger, reason)
                    fail_count += 1
                    failures[brand.code] = reason
                    continue
                if run.ok:
                    ok_count += 1
                else:
                    fail_count += 1
                    failures[brand.code] = run.failure_reason or "Unknown error"

            finished_at = utc_now()
            summary = {
                "ok_count": ok_count,
                "fail_count": fail_count,
                "skipped_count": skipped_count,
                "total": len(active),
                "trigger": trigger,
                "started_at": started_at.isoformat(),
                "finished_at": finished_at.isoformat(),
                "stopped": stopped,
            }
            self._last_summary = summary
            await loop.run_in_executor(
                None,
                self.settings.update,
                functools.partial(_record_sweep, finished_at=finished_at, summary=summary, failures=failures),
            )
            logger.info(
                "Finished %s sweep: %s ok, %s failed, %s skipped", trigger, ok_count, fail_count, skipped_count
            )
        except Exception as exc:
            self._last_error = str(exc) or exc.__class__.__name__
            logger.exception("Auto-check sweep failed")
        finally:
            self._state = STATE_IDLE
            self._current_brand = None
            self._last_finished = utc_now()
            self._notify()

    async def _record_crash(self, brand, trigger: str, reason: str) -> None:
        run = build_run(brand, trigger, utc_now(), credential=None, failure=reason)
        try:
            await asyncio.get_running_loop().run_in_executor(None, self.runs.insert, run)
        except Exception:
            logger.exception("Could not record failed check for %s", brand.code)


def _ensure_next_slot(settings: ScheduleSettings, *, now: datetime) -> None:
    if settings.auto_check_enabled and settings.next_auto_check_at is None:
        settings.next_auto_check_at = next_check_slot(now, settings.interval_minutes)


def _record_sweep(
    settings: ScheduleSettings,
    *,
    finished_at: datetime,
    summary: dict[str, Any],
    failures: dict[str, str],
) -> None:
    settings.last_auto_check_at = finished_at
    settings.last_run_summary = summary
    settings.last_run_failures = failures
    if settings.auto_check_enabled:
        settings.next_auto_check_at = next_check_slot(finished_at, settings.interval_minutes)
    else:
        settings.next_auto_check_at = None
