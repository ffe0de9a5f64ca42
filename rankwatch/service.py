"""Process entry: run the schedulers, or a single sweep or backup."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from dataclasses import dataclass

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from rankwatch.admin import AdminService
from rankwatch.backup.export import BackupSource
from rankwatch.backup.runs import BackupRunStore
from rankwatch.catalog.store import CatalogStore
from rankwatch.checks.runs import CheckRunStore
from rankwatch.db.migrate import run_migrations
from rankwatch.db.session import create_engine_from_env
from rankwatch.jobs.auto_check import AutoCheckScheduler
from rankwatch.jobs.backup import BackupScheduler
from rankwatch.scheduling.settings import SettingsRepository
from rankwatch.serp.client import SerpClient
from rankwatch.serp.credentials import CredentialStore
from rankwatch.serp.key_pool import ApiKeyRotationPool

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    engine: Engine
    client: SerpClient
    auto_check: AutoCheckScheduler
    backup: BackupScheduler
    admin: AdminService


def build_services(engine: Engine) -> Services:
    settings = SettingsRepository(engine)
    pool = ApiKeyRotationPool(CredentialStore(engine))
    check_runs = CheckRunStore(engine)
    backup_runs = BackupRunStore(engine)
    client = SerpClient()
    auto_check = AutoCheckScheduler(
        settings=settings,
        catalog=CatalogStore(engine),
        pool=pool,
        client=client,
        runs=check_runs,
        on_status_change=lambda status: logger.debug("Auto-check status: %s", status.state),
    )
    backup = BackupScheduler(
        settings=settings,
        source=BackupSource(engine),
        runs=backup_runs,
        on_status_change=lambda status: logger.debug("Backup running: %s", status.is_running),
    )
    admin = AdminService(
        settings=settings,
        pool=pool,
        check_runs=check_runs,
        backup_runs=backup_runs,
        auto_check=auto_check,
        backup=backup,
    )
    return Services(engine=engine, client=client, auto_check=auto_check, backup=backup, admin=admin)


def prepare(engine: Engine, pool: ApiKeyRotationPool) -> None:
    run_migrations(engine)
    pool.seed_from_env()
    baseline = os.environ.get("SERP_BASELINE_REMAINING")
    if baseline and baseline.strip().lstrip("-").isdigit():
        pool.apply_baseline(int(baseline), os.environ.get("SERP_BASELINE_KEY_NAME", ""))


async def serve(services: Services) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass
    services.auto_check.start()
    services.backup.start()
    logger.info("Schedulers started")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await services.auto_check.shutdown()
        await services.backup.shutdown()
        await services.client.close()


async def check_now(services: Services) -> None:
    try:
        services.auto_check.run_now("cli")
        await services.auto_check.join()
        summary = services.auto_check.status().last_summary
        logger.info("Sweep summary: %s", summary)
    finally:
        await services.client.close()


async def backup_now(services: Services) -> None:
    try:
        services.backup.run_now("cli")
        await services.backup.join()
    finally:
        await services.client.close()
    status = services.backup.status()
    if status.last_error:
        logger.error("Backup failed: %s", status.last_error)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(prog="rankwatch")
    parser.add_argument("command", choices=("serve", "check-now", "backup-now"))
    args = parser.parse_args(argv)

    engine = create_engine_from_env()
    services = build_services(engine)
    prepare(engine, services.admin.pool)
    if args.command == "serve":
        asyncio.run(serve(services))
    elif args.command == "check-now":
        asyncio.run(check_now(services))
    else:
        asyncio.run(backup_now(services))


if __name__ == "__main__":
    main()
